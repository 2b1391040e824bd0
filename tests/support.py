"""Shared constants and helpers for SendGate tests."""

import os
from datetime import datetime

import pytest

TEST_DATABASE_URL = os.getenv("SENDGATE_TEST_DATABASE_URL")

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"

requires_postgres = pytest.mark.skipif(
    not TEST_DATABASE_URL or not TEST_DATABASE_URL.startswith("postgresql"),
    reason="needs SENDGATE_TEST_DATABASE_URL pointing at PostgreSQL",
)


def naive(value: datetime) -> datetime:
    """SQLite hands back naive UTC timestamps; compare on that basis."""
    return value.replace(tzinfo=None)
