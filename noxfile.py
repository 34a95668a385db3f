import nox

nox.needs_version = ">=2024.4.15"
nox.options.default_venv_backend = "uv|virtualenv"


@nox.session(python=["3.9", "3.10", "3.11", "3.12"])
def tests(session: nox.Session) -> None:
    session.install("-e.[test]")
    session.run("pytest", "--cov", "bodyparser", "--timeout=30", "tests", *session.posargs)


@nox.session
@nox.parametrize("multipart", ["python-multipart==0.0.13", "python-multipart"])
def multipart_versions(session: nox.Session, multipart: str) -> None:
    # The form decoder relies on python-multipart's low level parsers; check
    # the oldest supported release as well as the latest.
    session.install("-e.[test]", multipart)
    session.run("pytest", "tests/test_decoder.py", "tests/test_bodyparser.py")


@nox.session
def installed(session: nox.Session) -> None:
    session.install(".")
    session.run("python", "-c", "import bodyparser; print(bodyparser.__version__)")
