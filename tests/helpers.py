"""Shared fixtures for the ParkWise test suites."""
from __future__ import annotations

import datetime as dt
from types import SimpleNamespace

from database.documents import DocumentStore
from database.models import create_session_factory

START = dt.datetime(2026, 1, 5, 8, 0, tzinfo=dt.timezone.utc)
END = START + dt.timedelta(hours=2)


def make_documents(rules=None) -> DocumentStore:
    """A document store on a private in-memory SQLite database."""

    return DocumentStore(create_session_factory("sqlite://"), rules=rules)


def fake_groq(create):
    """Object shaped like a Groq client whose completions call ``create``."""

    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


def completion(content: str):
    message = SimpleNamespace(content=content)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])
