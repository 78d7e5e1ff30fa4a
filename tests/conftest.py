from __future__ import annotations

import os

import pytest

from tests.utils.fakes import Harness


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    for name in list(os.environ):
        if name.startswith("FHVM_"):
            monkeypatch.delenv(name)
    # FhvmSettings reads .env from the working directory.
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def harness(tmp_path) -> Harness:
    return Harness(tmp_path)
