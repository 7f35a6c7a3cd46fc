"""Shared fixtures for the zbrs test suite."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from builders import InMemoryStore, build_parent_repo, build_translation_repo
from zbrs.repository.policy import SecurityPolicy
from zbrs.repository.validator import ZBRSValidator


@pytest.fixture
def policy() -> SecurityPolicy:
    return SecurityPolicy()


@pytest.fixture
def validator(policy: SecurityPolicy) -> ZBRSValidator:
    return ZBRSValidator(policy)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def translation_repo(tmp_path: Path) -> Path:
    return build_translation_repo(tmp_path / "kjv")


@pytest.fixture
def parent_repo(tmp_path: Path) -> Path:
    return build_parent_repo(tmp_path / "collection")


@pytest.fixture
def repo_factory(tmp_path: Path) -> Callable[..., Path]:
    """Build extra translation repositories under tmp_path by name."""

    def factory(name: str, **kwargs) -> Path:
        repo_id = kwargs.pop("repo_id", name)
        return build_translation_repo(tmp_path / name, repo_id=repo_id, **kwargs)

    return factory
