"""Persist task states so that tasks can be recovered after restart."""

__all__ = [
    'TaskStateStore',
    'create_engine',
]

import logging

import sqlalchemy
from sqlalchemy import (
    Column,
    MetaData,
    String,
    Table,
    Text,
    select,
)
from sqlalchemy.pool import StaticPool

from .tasks import TaskState

LOG = logging.getLogger(__name__)

_IN_MEMORY_URIS = frozenset(('sqlite://', 'sqlite:///:memory:'))


def create_engine(db_uri, check_same_thread=False, echo=False):
    if not db_uri.startswith('sqlite'):
        raise ValueError('only support sqlite at the moment: %s' % db_uri)
    kwargs = {}
    if db_uri in _IN_MEMORY_URIS:
        # Share the one in-memory database among all threads.
        kwargs['poolclass'] = StaticPool
    engine = sqlalchemy.create_engine(
        db_uri,
        echo=echo,
        connect_args={
            'check_same_thread': check_same_thread,
        },
        **kwargs,
    )

    @sqlalchemy.event.listens_for(engine, 'connect')
    def do_connect(dbapi_connection, _):
        # Stop pysqlite issue commit automatically.
        dbapi_connection.isolation_level = None

    @sqlalchemy.event.listens_for(engine, 'begin')
    def do_begin(connection):
        connection.exec_driver_sql('BEGIN EXCLUSIVE')

    return engine


class TaskStateStore:

    def __init__(self, engine, metadata=None):
        self._engine = engine
        self._table = Table(
            'task_states',
            metadata if metadata is not None else MetaData(),
            Column('task_id', String, primary_key=True),
            Column('machine_name', String, nullable=False),
            Column('state', Text, nullable=False),
        )
        self._table.create(engine, checkfirst=True)

    def save(self, task_id, task_state):
        LOG.debug('save task state: %s', task_id)
        with self._engine.begin() as conn:
            conn.execute(
                self._table.delete().where(self._table.c.task_id == task_id)
            )
            conn.execute(
                self._table.insert().values(
                    task_id=task_id,
                    machine_name=task_state.machine_name,
                    state=task_state.encode(),
                )
            )

    def load(self, task_id):
        """Return the task state, or None if it does not exist."""
        with self._engine.begin() as conn:
            encoded = conn.execute(
                select(self._table.c.state)
                .where(self._table.c.task_id == task_id)
            ).scalar_one_or_none()
        return None if encoded is None else TaskState.decode(encoded)

    def load_all(self):
        with self._engine.begin() as conn:
            rows = conn.execute(
                select(self._table.c.task_id, self._table.c.state)
                .order_by(self._table.c.task_id)
            ).all()
        return [(task_id, TaskState.decode(state)) for task_id, state in rows]

    def delete(self, task_id):
        LOG.debug('delete task state: %s', task_id)
        with self._engine.begin() as conn:
            result = conn.execute(
                self._table.delete().where(self._table.c.task_id == task_id)
            )
        return result.rowcount > 0
