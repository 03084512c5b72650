"""Shared fixtures for identity resolution tests."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from factories import make_company, make_person

from contactgraph.resolution.models import CanonicalCompany, CanonicalPerson


@pytest.fixture()
def conn() -> MagicMock:
    """A stand-in psycopg connection; ``conn.transaction()`` works as a context manager."""
    return MagicMock()


@pytest.fixture()
def acme() -> CanonicalCompany:
    return make_company("co-acme", "Acme", domains=("acme.com",))


@pytest.fixture()
def jane() -> CanonicalPerson:
    return make_person("p-jane", "Jane", "Doe", email="jane@acme.com", company_id="co-acme")
