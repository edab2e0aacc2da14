import shutil
from pathlib import Path

import pytest

from haven.storage import Storage

TEST_DATA_DIR = Path("data-tests")


@pytest.fixture
def data_dir() -> Path:
    """Wipe and return data-tests/ for a test that persists state."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    TEST_DATA_DIR.mkdir()
    return TEST_DATA_DIR


@pytest.fixture
def storage(data_dir: Path) -> Storage:
    return Storage(data_dir)
