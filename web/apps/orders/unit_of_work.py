"""Explicit unit of work over Django's ``transaction.atomic``.

The checkout saga opens the scope with ``begin()`` and closes it with
``commit()`` or ``abort()`` instead of a ``with`` block, so it can run
compensation between the rollback and re-raising the error.
``InMemoryUnitOfWork`` gives the same contract to in-memory stores.
"""

from django.db import DEFAULT_DB_ALIAS, transaction


class DjangoUnitOfWork:
    def __init__(self, using: str = DEFAULT_DB_ALIAS):
        self.using = using
        self._atomic = None

    @property
    def active(self) -> bool:
        return self._atomic is not None

    def begin(self) -> None:
        if self._atomic is not None:
            raise RuntimeError("unit of work already active")
        self._atomic = transaction.atomic(using=self.using)
        self._atomic.__enter__()

    def commit(self) -> None:
        """Commit the scope.

        Raises whatever the database raises on commit; the scope is closed
        either way.
        """
        atomic, self._atomic = self._atomic, None
        if atomic is None:
            raise RuntimeError("unit of work not active")
        atomic.__exit__(None, None, None)

    def abort(self) -> None:
        """Roll back the scope. A no-op when nothing is open."""
        atomic, self._atomic = self._atomic, None
        if atomic is None:
            return
        transaction.set_rollback(True, using=self.using)
        atomic.__exit__(None, None, None)

    def __enter__(self):
        self.begin()
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.commit()
        else:
            self.abort()
        return False


class InMemoryUnitOfWork:
    """Unit of work for in-memory stores.

    Stores register an undo callback for every write made while the scope
    is open; ``abort`` runs them newest first, ``commit`` discards them.
    """

    def __init__(self):
        self.active = False
        self.committed = False
        self.aborted = False
        self._undo = []

    def begin(self) -> None:
        if self.active:
            raise RuntimeError("unit of work already active")
        self.active = True
        self._undo = []

    def on_abort(self, undo) -> None:
        if self.active:
            self._undo.append(undo)

    def commit(self) -> None:
        if not self.active:
            raise RuntimeError("unit of work not active")
        self.active = False
        self.committed = True
        self._undo = []

    def abort(self) -> None:
        if not self.active:
            return
        self.active = False
        self.aborted = True
        undo, self._undo = self._undo, []
        for fn in reversed(undo):
            fn()
