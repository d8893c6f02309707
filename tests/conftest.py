import os
import shutil
import tempfile

import pytest

from l10n.app_config import default_app_config


class ProjectTree:
    """A throwaway project root with a ``.git`` marker and helpers to populate it."""

    def __init__(self, root: str):
        self.root = root
        os.makedirs(os.path.join(root, ".git"), exist_ok=True)

    def path(self, rel_path: str) -> str:
        return os.path.join(self.root, *rel_path.split("/"))

    def write(self, rel_path: str, content: str) -> str:
        path = self.path(rel_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(content)
        return path

    def read(self, rel_path: str) -> str:
        with open(self.path(rel_path), 'r', encoding='utf-8') as f:
            return f.read()

    def exists(self, rel_path: str) -> bool:
        return os.path.exists(self.path(rel_path))

    def app_config(self):
        return default_app_config(self.root)


@pytest.fixture
def project():
    root = tempfile.mkdtemp(prefix="l10n-test-")
    try:
        yield ProjectTree(os.path.realpath(root))
    finally:
        shutil.rmtree(root, ignore_errors=True)


@pytest.fixture(autouse=True)
def clean_l10n_env(monkeypatch):
    """Keep settings from the developer's shell out of the tests."""
    for name in ("L10N_LOG_LEVEL", "L10N_RETRIES", "L10N_FAILURE_POLICY", "L10N_CONFIG_FILE"):
        monkeypatch.delenv(name, raising=False)
