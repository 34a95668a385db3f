import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from bodyparser.fields import set_field


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    tree: dict = {}
    while fdp.remaining_bytes():
        name = fdp.ConsumeUnicodeNoSurrogates(fdp.ConsumeIntInRange(0, 32))
        set_field(tree, name, fdp.ConsumeUnicodeNoSurrogates(4))


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
