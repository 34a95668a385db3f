from __future__ import annotations

import atheris


class EnhancedDataProvider(atheris.FuzzedDataProvider):
    def ConsumeRandomBytes(self) -> bytes:
        return self.ConsumeBytes(self.ConsumeIntInRange(0, self.remaining_bytes()))

    def ConsumeRandomString(self) -> str:
        return self.ConsumeUnicodeNoSurrogates(self.ConsumeIntInRange(0, self.remaining_bytes()))

    def ConsumeRandomChunks(self) -> list[bytes]:
        """Splits the rest of the input into chunks of random sizes."""
        chunks = []
        while self.remaining_bytes():
            chunks.append(self.ConsumeBytes(self.ConsumeIntInRange(1, 64)))
        return chunks

    def ConsumeOptionalSize(self) -> int | None:
        if self.ConsumeBool():
            return None
        return self.ConsumeIntInRange(1, 1024)
