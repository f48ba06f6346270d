"""Test that the project setup is working correctly."""

import calibr


def test_version() -> None:
    """Test that version is defined."""
    assert calibr.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from calibr import ledger, reputation, service, sizing, storage

    # Just verify imports work
    assert sizing is not None
    assert ledger is not None
    assert reputation is not None
    assert storage is not None
    assert service is not None
