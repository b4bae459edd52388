"""
Import all ORM model modules so Base.metadata is complete for create_all and alembic.
"""

from __future__ import annotations

import importlib

from marketplace.infra.db import Base

_DOMAINS: tuple[str, ...] = (
    "parties",
    "bookings",
    "payments",
    "chat_threads",
)


def import_all_db_models() -> None:
    for domain in _DOMAINS:
        importlib.import_module(f"marketplace.domain.{domain}.db_models")


import_all_db_models()

__all__ = ["Base", "import_all_db_models"]
