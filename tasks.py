import os
import re
import sys

from invoke import run, task

version_file = os.path.join("bodyparser", "__init__.py")
version_regex = re.compile(r"((?:\d+)\.(?:\d+)\.(?:\d+))")


class g:
    test_success = False


@task
def test(ctx):
    test_cmd = [
        "pytest",  # Test command
        "--cov-report term-missing",  # Print only uncovered lines to stdout
        "--cov bodyparser",  # Test only this package
        "--timeout=30",  # Each test should timeout after 30 sec
    ]

    # Test in this directory
    test_cmd.append("tests")

    res = run(" ".join(test_cmd), pty=False)
    g.test_success = res.ok


@task
def version(ctx):
    with open(version_file) as f:
        print(version_regex.search(f.read()).group(0))


@task(pre=[test])
def deploy(ctx):
    if not g.test_success:
        print("Tests must pass before deploying!", file=sys.stderr)
        return

    # Build source distribution and wheel
    run("python setup.py sdist bdist_wheel")

    # Upload distributions from last step to pypi
    run("twine upload dist/*")
