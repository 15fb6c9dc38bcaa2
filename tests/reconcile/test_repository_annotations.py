"""Repository classes define a ``list`` method; their other annotations must still resolve."""

import typing

import pytest

from src.gitops.reconcile.adapters import InMemoryApplicationRepository, PostgresApplicationRepository
from src.gitops.reconcile.domain.entities import Application, SyncRecord
from src.gitops.reconcile.domain.ports import IApplicationRepository
from src.gitops.reconcile.use_cases import ApplicationRegistry


@pytest.mark.parametrize(
    "cls",
    [IApplicationRepository, InMemoryApplicationRepository, PostgresApplicationRepository, ApplicationRegistry],
)
def test_list_annotations_use_builtin_list(cls):
    assert typing.get_type_hints(cls.list)["return"] == list[Application]


@pytest.mark.parametrize("cls", [IApplicationRepository, InMemoryApplicationRepository, PostgresApplicationRepository])
def test_history_annotation_resolves(cls):
    assert typing.get_type_hints(cls.get_history)["return"] == list[SyncRecord]
