import nox

PYTHON_VERSIONS = ["3.11", "3.12", "3.13", "3.14"]

# Packages with C extensions that must be rebuilt per Python version.
_C_EXT_PACKAGES = ["psycopg2-binary"]


def _install(session: nox.Session) -> None:
    """Install the project with the test and postgres extras into the nox virtualenv."""
    session.install("-e", ".[test,postgres]")
    session.run(
        "pip",
        "install",
        "--force-reinstall",
        "--no-cache-dir",
        *_C_EXT_PACKAGES,
    )


@nox.session(python=PYTHON_VERSIONS)
def tests(session: nox.Session) -> None:
    """Run full test suite across Python versions."""
    _install(session)
    session.run("pytest")


@nox.session(python=PYTHON_VERSIONS)
def tests_domain(session: nox.Session) -> None:
    """Run domain-layer tests only (no service layer involved)."""
    _install(session)
    session.run(
        "pytest",
        "tests/inventory/domain/",
        "tests/ordering/domain/",
        "tests/payments/domain/",
        "tests/common/domain/",
    )


@nox.session(python=PYTHON_VERSIONS)
def tests_concurrency(session: nox.Session) -> None:
    """Run the contention tests only: checkout, refunds, duplicate webhooks."""
    _install(session)
    session.run("pytest", "-k", "concurrent")
