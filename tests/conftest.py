# tests/conftest.py
import pytest
from pathlib import Path

from magebox.core.templates import TemplateLoader


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """An empty magebox data root inside the test's tmp dir."""
    root = tmp_path / "magebox-data"
    root.mkdir()
    return root


@pytest.fixture
def template_loader(tmp_path: Path) -> TemplateLoader:
    """Loader that ignores any user overrides and only sees the templates shipped in the package."""
    return TemplateLoader(local_dir=tmp_path / "no-local", lib_dir=tmp_path / "no-lib")
