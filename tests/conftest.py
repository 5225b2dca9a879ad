from __future__ import annotations

from pathlib import Path

import pytest

from tests._fixtures.dataset_builder import DatasetBuilder


@pytest.fixture
def dataset(tmp_path: Path) -> DatasetBuilder:
    """Provide a reusable dataset builder rooted at the pytest tmp_path."""
    return DatasetBuilder(tmp_path)
