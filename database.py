"""Módulo de acceso a la base de datos.

Define el motor y utilidades de sesión para realizar operaciones CRUD. La
instancia de Database se inyecta en cada servicio; no hay motor global.
"""

from sqlalchemy import event
from sqlmodel import SQLModel, create_engine, Session

import models  # noqa: F401  registra las tablas en SQLModel.metadata


class Database:
    """Agrupa el motor SQLAlchemy y la creación de sesiones.

    En SQLite activa claves foráneas en cada conexión: la integridad
    referencial orders -> order_item la garantiza el motor, no la aplicación.
    """
    def __init__(self, url: str, echo: bool = False):
        self.url = url
        connect_args = {}
        if url.startswith('sqlite'):
            connect_args = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, echo=echo, connect_args=connect_args)
        if url.startswith('sqlite'):
            event.listen(self.engine, 'connect', _enable_sqlite_foreign_keys)

    # init: Crea todas las tablas definidas en los modelos si no existen.
    def init(self):
        SQLModel.metadata.create_all(self.engine)

    def session(self) -> 'DBSession':
        return DBSession(self.engine)

    def dispose(self):
        self.engine.dispose()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute('PRAGMA foreign_keys=ON')
    cursor.close()


class DBSession:
    """Context manager para manejar sesiones.

    Al salir del contexto realiza rollback si hubo excepción y cierra la sesión.
    """
    def __init__(self, engine):
        self.engine = engine

    def __enter__(self):
        self.session = Session(self.engine, expire_on_commit=False)
        return self.session

    def __exit__(self, exc_type, exc, tb):
        if exc:
            self.session.rollback()
        self.session.close()
