# backend/services/lifecycle.py
"""
Trade status state machine.

Pure rules only: which actor may request which action from which status, and
the status the trade ends up in. Persistence and notifications live in
``services.trade_service``.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from errors import AlreadyTerminal, InvalidTransition, Unauthorized
from models.trade import (
    TERMINAL_STATUSES,
    StatusHistoryEntry,
    TradeAction,
    TradeRecord,
    TradeStatus,
)

SYSTEM_ACTOR = "system"

NON_TERMINAL_STATUSES = frozenset(s for s in TradeStatus if s not in TERMINAL_STATUSES)


@dataclass(frozen=True)
class TransitionRule:
    """Who may request an action, from where, and where it leads."""
    actors: frozenset[str]
    from_statuses: frozenset[TradeStatus]
    # None when the action does not move the trade (counter-offer)
    to_status: Optional[TradeStatus]


TRANSITIONS: dict[TradeAction, TransitionRule] = {
    TradeAction.SELLER_INITIATE: TransitionRule(
        actors=frozenset({"seller"}),
        from_statuses=frozenset({
            TradeStatus.CREATED,
            TradeStatus.PENDING,
            TradeStatus.AWAITING_SELLER,
        }),
        to_status=TradeStatus.ACCEPTED,
    ),
    TradeAction.SELLER_CONFIRM_SENT: TransitionRule(
        actors=frozenset({"seller"}),
        from_statuses=frozenset({
            TradeStatus.CREATED,
            TradeStatus.PENDING,
            TradeStatus.AWAITING_SELLER,
            TradeStatus.ACCEPTED,
        }),
        to_status=TradeStatus.AWAITING_BUYER,
    ),
    TradeAction.BUYER_CONFIRM: TransitionRule(
        actors=frozenset({"buyer"}),
        # offer_sent / awaiting_confirmation are older names for awaiting_buyer
        from_statuses=frozenset({
            TradeStatus.AWAITING_BUYER,
            TradeStatus.OFFER_SENT,
            TradeStatus.AWAITING_CONFIRMATION,
        }),
        to_status=TradeStatus.COMPLETED,
    ),
    TradeAction.SELLER_REJECT: TransitionRule(
        actors=frozenset({"seller"}),
        from_statuses=frozenset({
            TradeStatus.CREATED,
            TradeStatus.PENDING,
            TradeStatus.AWAITING_SELLER,
        }),
        to_status=TradeStatus.REJECTED,
    ),
    TradeAction.CANCEL: TransitionRule(
        actors=frozenset({"buyer", "seller"}),
        from_statuses=NON_TERMINAL_STATUSES,
        to_status=TradeStatus.CANCELLED,
    ),
    TradeAction.COUNTER_OFFER: TransitionRule(
        actors=frozenset({"seller"}),
        from_statuses=frozenset({TradeStatus.AWAITING_SELLER}),
        to_status=None,
    ),
    TradeAction.EXPIRE: TransitionRule(
        actors=frozenset({SYSTEM_ACTOR}),
        from_statuses=frozenset({
            TradeStatus.CREATED,
            TradeStatus.PENDING,
            TradeStatus.AWAITING_SELLER,
        }),
        to_status=TradeStatus.EXPIRED,
    ),
    TradeAction.FAIL: TransitionRule(
        actors=frozenset({SYSTEM_ACTOR}),
        from_statuses=frozenset({
            TradeStatus.ACCEPTED,
            TradeStatus.AWAITING_BUYER,
            TradeStatus.OFFER_SENT,
            TradeStatus.AWAITING_CONFIRMATION,
        }),
        to_status=TradeStatus.FAILED,
    ),
}


def actor_role(trade: TradeRecord, actor_id: str) -> Optional[str]:
    """Role of the actor in this trade: buyer, seller, system or None."""
    if actor_id == SYSTEM_ACTOR:
        return SYSTEM_ACTOR
    return trade.role_of(actor_id)


def check_transition(trade: TradeRecord, action: TradeAction, actor_id: str) -> Optional[TradeStatus]:
    """
    Decide whether ``actor_id`` may apply ``action`` to ``trade``.

    Returns the target status (None for actions that leave the status alone).
    Raises Unauthorized for outsiders and wrong roles, AlreadyTerminal for
    finished trades and InvalidTransition for illegal source states.
    """
    rule = TRANSITIONS[TradeAction(action)]
    role = actor_role(trade, actor_id)

    if role is None:
        raise Unauthorized(
            "You are not a party to this trade",
            trade_id=trade.trade_id,
        )

    if trade.status in TERMINAL_STATUSES:
        raise AlreadyTerminal(
            f"Trade is already {trade.status.value}",
            trade_id=trade.trade_id,
            status=trade.status.value,
        )

    if role not in rule.actors:
        allowed = " or ".join(sorted(rule.actors))
        raise Unauthorized(
            f"Only the {allowed} can {TradeAction(action).value} this trade",
            trade_id=trade.trade_id,
        )

    if trade.status not in rule.from_statuses:
        raise InvalidTransition(
            f"Trade cannot {TradeAction(action).value} because it is in {trade.status.value} state",
            trade_id=trade.trade_id,
            status=trade.status.value,
        )

    return rule.to_status


def allowed_actions(trade: TradeRecord, actor_id: str) -> list[TradeAction]:
    """Actions the actor could currently request (used to drive UI controls)."""
    actions = []
    for action in TRANSITIONS:
        try:
            check_transition(trade, action, actor_id)
        except (Unauthorized, AlreadyTerminal, InvalidTransition):
            continue
        actions.append(action)
    return actions


def append_status(
    trade: TradeRecord,
    status: TradeStatus,
    actor_id: Optional[str],
    now: datetime,
    note: Optional[str] = None,
) -> TradeRecord:
    """Return a copy of the trade with one more history entry and the new status."""
    history = list(trade.status_history)
    timestamp = now
    # Keep the log monotonic even if the clock steps backwards
    if history and history[-1].timestamp > timestamp:
        timestamp = history[-1].timestamp

    history.append(StatusHistoryEntry(
        sequence=len(history),
        status=status,
        timestamp=timestamp,
        actor_id=actor_id,
        note=note,
    ))

    update = {
        "status": status,
        "status_history": history,
        "updated_at": timestamp,
    }
    if status == TradeStatus.COMPLETED:
        update["completed_at"] = timestamp

    return trade.model_copy(update=update)
