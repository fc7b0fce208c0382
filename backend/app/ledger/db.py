# app/ledger/db.py
from __future__ import annotations

import threading
from typing import Dict

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from app.core.config import settings

_lock = threading.Lock()
_engines: Dict[str, Engine] = {}


def tenant_database_url(tenant_id: str) -> str:
    if settings.tenant_database_url_template:
        return settings.tenant_database_url_template.format(tenant_id=tenant_id)
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL not set")
    return settings.database_url


def get_engine(url: str) -> Engine:
    """
    One pooled engine per database URL, created on first use.
    Never connects at import time.
    """
    engine = _engines.get(url)
    if engine is not None:
        return engine

    with _lock:
        engine = _engines.get(url)
        if engine is None:
            engine = create_engine(url, pool_pre_ping=True)
            _engines[url] = engine
    return engine


def tenant_session(tenant_id: str) -> Session:
    factory = sessionmaker(
        bind=get_engine(tenant_database_url(tenant_id)),
        autoflush=False,
        autocommit=False,
    )
    return factory()
