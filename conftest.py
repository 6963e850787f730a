import pytest

from storyloom.state import StateStore
from storyloom.storage import Storage


@pytest.fixture
def storage(tmp_path) -> Storage:
    """A fresh JSON store per test."""
    return Storage(tmp_path / "data")


@pytest.fixture
def state(storage: Storage) -> StateStore:
    return StateStore(storage)
