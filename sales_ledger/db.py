from __future__ import annotations

from collections.abc import Iterator

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from sales_ledger.config import settings


def _engine_kwargs(url: str) -> dict:
    kwargs: dict = {'echo': settings.db_echo, 'pool_pre_ping': True}
    if url.startswith('postgresql'):
        kwargs['pool_size'] = settings.db_pool_size
        kwargs['max_overflow'] = settings.db_max_overflow
        if settings.db_statement_timeout_ms:
            kwargs['connect_args'] = {'options': f'-c statement_timeout={settings.db_statement_timeout_ms}'}
    return kwargs


engine = create_engine(settings.database_url_normalized, **_engine_kwargs(settings.database_url_normalized))
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def dialect_insert(db: Session, model):
    """Return an INSERT construct that supports ON CONFLICT for the bound dialect."""
    dialect = db.get_bind().dialect.name
    if dialect == 'postgresql':
        return postgresql.insert(model)
    if dialect == 'sqlite':
        return sqlite.insert(model)
    raise RuntimeError(f'Upserts are not supported on dialect {dialect}')
