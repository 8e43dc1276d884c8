"""Nummernkreise pro ausstellender Identität und Belegart.

Der Zähler liegt in der Datenbank (``sequence_counters``). Eine Vergabe ist ein
einziges atomares ``UPDATE ... RETURNING``; parallele Finalisierungen derselben
Identität serialisieren ausschließlich auf dieser Zeile.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import sqlalchemy as sa
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.core.observability.logging import logger
from backend.core.observability.metrics import increment_counter

from .dto import DocumentClass
from .errors import NumberingError

IDENTITY_KINDS = ("company", "contact")


def _default_clock() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class IssuingIdentity:
    kind: str
    identity_id: str

    def __post_init__(self) -> None:
        if self.kind not in IDENTITY_KINDS:
            raise ValueError(f"Unsupported identity kind: {self.kind!r}")
        if not self.identity_id:
            raise ValueError("identity_id is required")

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.identity_id}"

    @classmethod
    def company(cls, tenant_id: str) -> "IssuingIdentity":
        return cls(kind="company", identity_id=tenant_id)

    @classmethod
    def contact(cls, contact_id: str) -> "IssuingIdentity":
        return cls(kind="contact", identity_id=contact_id)


@dataclass(frozen=True, slots=True)
class AllocatedNumber:
    identity: IssuingIdentity
    document_class: DocumentClass
    counter: int
    prefix: str
    number: str


def format_number(prefix: str, counter: int, pad_width: int = 4) -> str:
    return f"{prefix}-{counter:0{pad_width}d}"


def get_sequence_counters_table(metadata: MetaData) -> Table:
    """Return the sequence_counters table definition for the given metadata."""
    return Table(
        "sequence_counters",
        metadata,
        Column("identity_key", String(128), primary_key=True),
        Column("document_class", String(16), primary_key=True),
        Column("tenant_id", String, nullable=False),
        Column("prefix", String(32), nullable=False),
        Column("counter", Integer, nullable=False, server_default=sa.text("0")),
        Column("updated_at", DateTime(timezone=True)),
        extend_existing=True,
    )


class SequenceAllocator:
    """Vergibt lückenlose, streng monotone Belegnummern."""

    def __init__(
        self,
        engine: Engine,
        table: Table,
        *,
        pad_width: int = 4,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._table = table
        self._pad_width = pad_width
        self._clock = clock or _default_clock

    def _match(self, identity: IssuingIdentity, document_class: DocumentClass):
        t = self._table
        return sa.and_(
            t.c.identity_key == identity.key,
            t.c.document_class == DocumentClass(document_class).value,
        )

    def provision(
        self,
        identity: IssuingIdentity,
        document_class: DocumentClass,
        prefix: str,
        *,
        tenant_id: str,
        connection: Connection | None = None,
    ) -> bool:
        """Legt den Zähler an oder übernimmt ein geändertes Präfix.

        Der Zählerstand eines bestehenden Nummernkreises bleibt unverändert.
        Liefert ``True`` bei Neuanlage.
        """

        if not prefix or not prefix.strip():
            raise ValueError("prefix is required")
        if connection is None:
            with self._engine.begin() as conn:
                return self.provision(
                    identity, document_class, prefix, tenant_id=tenant_id, connection=conn
                )

        document_class = DocumentClass(document_class)
        prefix = prefix.strip()
        now = self._clock()
        updated = connection.execute(
            sa.update(self._table)
            .where(self._match(identity, document_class))
            .values(prefix=prefix, updated_at=now)
        ).rowcount
        if updated:
            return False
        connection.execute(
            sa.insert(self._table).values(
                identity_key=identity.key,
                document_class=document_class.value,
                tenant_id=tenant_id,
                prefix=prefix,
                counter=0,
                updated_at=now,
            )
        )
        logger.info(
            "numbering_provisioned",
            extra={
                "identity_key": identity.key,
                "document_class": document_class.value,
                "prefix": prefix,
            },
        )
        return True

    def is_provisioned(self, identity: IssuingIdentity, document_class: DocumentClass) -> bool:
        with self._engine.connect() as conn:
            row = conn.execute(
                sa.select(self._table.c.counter).where(self._match(identity, document_class))
            ).first()
        return row is not None

    def current(self, identity: IssuingIdentity, document_class: DocumentClass) -> Optional[int]:
        with self._engine.connect() as conn:
            return conn.execute(
                sa.select(self._table.c.counter).where(self._match(identity, document_class))
            ).scalar()

    def allocate(
        self,
        identity: IssuingIdentity,
        document_class: DocumentClass,
        *,
        prefix: Optional[str] = None,
        connection: Connection | None = None,
    ) -> AllocatedNumber:
        document_class = DocumentClass(document_class)
        t = self._table
        values = {"counter": t.c.counter + 1, "updated_at": self._clock()}
        if prefix:
            values["prefix"] = prefix.strip()
        stmt = (
            sa.update(t)
            .where(self._match(identity, document_class))
            .values(**values)
            .returning(t.c.counter, t.c.prefix)
        )
        try:
            if connection is not None:
                row = connection.execute(stmt).first()
            else:
                with self._engine.begin() as conn:
                    row = conn.execute(stmt).first()
        except SQLAlchemyError as exc:
            increment_counter("numbering_failures_total", labels={"reason": "db_error"})
            logger.error(
                "numbering_allocate_failed",
                extra={"identity_key": identity.key, "document_class": document_class.value},
            )
            raise NumberingError(f"Sequence allocation failed for {identity.key}") from exc

        if row is None:
            increment_counter("numbering_failures_total", labels={"reason": "not_provisioned"})
            raise NumberingError(
                f"No {document_class.value} sequence configured for {identity.key}",
                code="numbering_not_provisioned",
            )

        allocated = AllocatedNumber(
            identity=identity,
            document_class=document_class,
            counter=int(row.counter),
            prefix=row.prefix,
            number=format_number(row.prefix, int(row.counter), self._pad_width),
        )
        logger.info(
            "numbering_allocated",
            extra={
                "identity_key": identity.key,
                "document_class": document_class.value,
                "invoice_number": allocated.number,
            },
        )
        return allocated

    def release(self, allocated: AllocatedNumber) -> bool:
        """Gibt eine Nummer zurück, solange danach keine weitere vergeben wurde.

        Schlägt die Rückgabe fehl, bleibt eine Lücke im Nummernkreis; sie wird
        als Warnung protokolliert.
        """

        t = self._table
        stmt = (
            sa.update(t)
            .where(self._match(allocated.identity, allocated.document_class))
            .where(t.c.counter == allocated.counter)
            .values(counter=t.c.counter - 1, updated_at=self._clock())
        )
        try:
            with self._engine.begin() as conn:
                released = conn.execute(stmt).rowcount == 1
        except SQLAlchemyError:
            logger.exception(
                "numbering_release_failed",
                extra={"identity_key": allocated.identity.key, "invoice_number": allocated.number},
            )
            released = False

        if released:
            logger.info(
                "numbering_released",
                extra={"identity_key": allocated.identity.key, "invoice_number": allocated.number},
            )
        else:
            increment_counter("numbering_gaps_total")
            logger.warning(
                "numbering_gap",
                extra={"identity_key": allocated.identity.key, "invoice_number": allocated.number},
            )
        return released
