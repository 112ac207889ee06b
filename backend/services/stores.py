# backend/services/stores.py
"""Supabase-backed document stores for trades and offers."""
import logging
from datetime import datetime
from typing import Generic, Iterable, Optional, TypeVar

from pydantic import BaseModel
from supabase import Client

from errors import InvalidTransition
from models.offer import OfferRecord, OfferStatus
from models.trade import TradeRecord, TradeStatus

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


class DocumentStore(Generic[RecordT]):
    """
    One table holding one JSON-ish document per row.

    Writes go through ``compare_and_set`` which only updates the row if its
    ``version`` still matches what the caller read, so two racing requests
    cannot both win.
    """
    model: type[RecordT]
    key: str

    def __init__(self, client: Client, table: str):
        self.client = client
        self.table = table

    def _query(self):
        return self.client.table(self.table)

    def _to_row(self, record: RecordT) -> dict:
        return record.model_dump(mode="json")

    def _from_rows(self, rows: Optional[Iterable[dict]]) -> list[RecordT]:
        return [self.model.model_validate(row) for row in rows or []]

    def get(self, record_id: str) -> Optional[RecordT]:
        result = self._query().select("*").eq(self.key, record_id).execute()
        records = self._from_rows(result.data)
        return records[0] if records else None

    def insert(self, record: RecordT) -> RecordT:
        result = self._query().insert(self._to_row(record)).execute()
        if not result.data:
            raise RuntimeError(f"Failed to insert into {self.table}")
        return self._from_rows(result.data)[0]

    def compare_and_set(self, record: RecordT, expected_version: int) -> RecordT:
        """Persist ``record`` only if the stored version is still ``expected_version``."""
        record_id = getattr(record, self.key)
        row = self._to_row(record.model_copy(update={"version": expected_version + 1}))

        result = (
            self._query()
            .update(row)
            .eq(self.key, record_id)
            .eq("version", expected_version)
            .execute()
        )

        if not result.data:
            logger.info("Lost write race on %s %s at version %s", self.table, record_id, expected_version)
            raise InvalidTransition(
                "This record was changed by another request. Refresh and try again.",
                **{self.key: record_id},
            )
        return self._from_rows(result.data)[0]


class TradeStore(DocumentStore[TradeRecord]):
    model = TradeRecord
    key = "trade_id"

    def list_for_user(
        self,
        user_id: str,
        role: str = "any",
        statuses: Optional[Iterable[TradeStatus]] = None,
    ) -> list[TradeRecord]:
        """Trades where the user is buyer and/or seller, newest first."""
        columns = {"buyer": ["buyer_id"], "seller": ["seller_id"]}.get(role, ["buyer_id", "seller_id"])
        status_values = [TradeStatus(s).value for s in statuses] if statuses is not None else None

        found: dict[str, TradeRecord] = {}
        for column in columns:
            query = self._query().select("*").eq(column, user_id)
            if status_values is not None:
                query = query.in_("status", status_values)
            result = query.order("created_at", desc=True).execute()
            for trade in self._from_rows(result.data):
                found[trade.trade_id] = trade

        return sorted(found.values(), key=lambda t: t.created_at, reverse=True)

    def list_active_for_item(self, item_id: str) -> list[TradeRecord]:
        """Non-terminal trades on one inventory item."""
        result = self._query().select("*").eq("item->>asset_id", item_id).execute()
        return [t for t in self._from_rows(result.data) if not t.is_terminal]

    def list_stale(self, statuses: Iterable[TradeStatus], updated_before: datetime) -> list[TradeRecord]:
        """Trades in one of ``statuses`` that have not moved since ``updated_before``."""
        result = (
            self._query()
            .select("*")
            .in_("status", [TradeStatus(s).value for s in statuses])
            .lt("updated_at", updated_before.isoformat())
            .execute()
        )
        return self._from_rows(result.data)


class OfferStore(DocumentStore[OfferRecord]):
    model = OfferRecord
    key = "offer_id"

    def find_pending(self, item_id: str, proposer_id: str) -> Optional[OfferRecord]:
        result = (
            self._query()
            .select("*")
            .eq("item_id", item_id)
            .eq("proposer_id", proposer_id)
            .eq("status", OfferStatus.PENDING.value)
            .execute()
        )
        offers = self._from_rows(result.data)
        return offers[0] if offers else None

    def list_pending_for_item(self, item_id: str) -> list[OfferRecord]:
        result = (
            self._query()
            .select("*")
            .eq("item_id", item_id)
            .eq("status", OfferStatus.PENDING.value)
            .execute()
        )
        return self._from_rows(result.data)

    def list_for_user(self, user_id: str, box: str) -> list[OfferRecord]:
        """Offers the user received (``box="received"``) or made (``box="sent"``)."""
        column = "recipient_id" if box == "received" else "proposer_id"
        result = (
            self._query()
            .select("*")
            .eq(column, user_id)
            .order("created_at", desc=True)
            .execute()
        )
        return sorted(self._from_rows(result.data), key=lambda o: o.created_at, reverse=True)

    def list_expired(self, now: datetime) -> list[OfferRecord]:
        result = (
            self._query()
            .select("*")
            .eq("status", OfferStatus.PENDING.value)
            .lt("expires_at", now.isoformat())
            .execute()
        )
        return self._from_rows(result.data)
