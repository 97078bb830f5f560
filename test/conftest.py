import json
import sys
from pathlib import Path

import pytest


# Ensure the project `src` directory is on sys.path so tests can import
# modules like `analysis`, `runtime`, `move.types`, etc.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


@pytest.fixture
def storage():
    """Fresh, empty global storage."""
    from runtime.storage import GlobalStorage

    return GlobalStorage()


@pytest.fixture
def sample_ctx():
    """Context over the sample module 0x2::M plus the stdlib."""
    from test_utils import load, sample_module

    return load(sample_module())


@pytest.fixture
def sample_file(tmp_path):
    """The sample module written as a declaration file."""
    from test_utils import sample_module

    path = tmp_path / "sample.json"
    path.write_text(json.dumps(sample_module(), indent=2))
    return path
