"""Database registry shared by models and services."""
from sqlite3 import Connection as SQLite3Connection

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event

db = SQLAlchemy()


def _enforce_sqlite_foreign_keys(dbapi_connection, connection_record):  # pragma: no cover - engine hook
    """Installment cascades and cash-flow SET NULL rely on SQLite foreign keys."""
    if isinstance(dbapi_connection, SQLite3Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()


def init_db(app):
    """Bind ``db`` to ``app``; SQLite engines get foreign keys switched on per connection."""
    db.init_app(app)
    with app.app_context():
        engine = db.engine
        if engine.dialect.name == "sqlite" and not event.contains(engine, "connect", _enforce_sqlite_foreign_keys):
            event.listen(engine, "connect", _enforce_sqlite_foreign_keys)
