import asyncio
import sys
import tempfile

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from bodyparser import BodyParserError, parse_body

upload_dir = tempfile.mkdtemp(prefix="bodyparser-fuzz-")


def on_file(field_name, file, stream) -> None:
    # Drain instead of writing to disk.
    stream.add_callback("data", file.on_data)


def consume_config(fdp: EnhancedDataProvider) -> dict:
    return {
        "MAX_FILE_COUNT": fdp.ConsumeOptionalSize(),
        "MAX_FILE_SIZE": fdp.ConsumeOptionalSize(),
        "MAX_FIELD_SIZE": fdp.ConsumeOptionalSize(),
        "MAX_JSON_SIZE": fdp.ConsumeOptionalSize(),
        "UPLOAD_DIR": upload_dir,
    }


def parse_json(fdp: EnhancedDataProvider) -> None:
    header = {"Content-Type": "application/json"}
    config = consume_config(fdp)
    asyncio.run(parse_body(header, fdp.ConsumeRandomChunks(), config=config))


def parse_form_urlencoded(fdp: EnhancedDataProvider) -> None:
    header = {"Content-Type": "application/x-www-form-urlencoded"}
    config = consume_config(fdp)
    asyncio.run(parse_body(header, fdp.ConsumeRandomChunks(), config=config))


def parse_multipart_form_data(fdp: EnhancedDataProvider) -> None:
    boundary = "boundary"
    header = {"Content-Type": f"multipart/form-data; boundary={boundary}"}
    config = consume_config(fdp)
    body = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="{fdp.ConsumeUnicodeNoSurrogates(8)}"; filename="f.txt"\r\n\r\n'
        f"{fdp.ConsumeRandomString()}\r\n"
        f"--{boundary}--\r\n"
    )
    asyncio.run(parse_body(header, body.encode("latin1", errors="ignore"), on_file=on_file, config=config))


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    targets = [parse_json, parse_form_urlencoded, parse_multipart_form_data]
    target = fdp.PickValueInList(targets)

    try:
        target(fdp)
    except BodyParserError:
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
