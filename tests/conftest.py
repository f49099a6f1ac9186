"""Shared fixtures for the relgraph test suite."""

from pathlib import Path

import pytest

from authz.relgraph_server.schema import compile_model, load_model, reset_registry

MODELS_DIR = Path(__file__).parent.parent / "examples"


def load_example_model(name: str):
    """Parse one of the example model files."""
    return load_model((MODELS_DIR / name).read_text())


@pytest.fixture(autouse=True)
def clean_registry():
    """Every test starts and ends without a published model."""
    reset_registry()
    yield
    reset_registry()


@pytest.fixture
def document_registry():
    """Compiled document sharing model."""
    return compile_model(load_example_model("document_model.yaml"))


@pytest.fixture
def folder_registry():
    """Compiled folder hierarchy model."""
    return compile_model(load_example_model("folder_model.yaml"))
