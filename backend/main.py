import logging
from typing import Any, Literal, Optional

from fastapi import Body, Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from supabase import create_client, Client

from config import settings
from errors import TradeError
from models.events import ChannelEvent, ClientFrame, EventType, user_topic
from models.offer import (
    OfferAcceptResponse,
    OfferCounter,
    OfferCreate,
    OfferListResponse,
    OfferRecord,
)
from models.trade import (
    BuyerConfirmRequest,
    CancelRequest,
    CounterOfferRequest,
    ExpirySweepResponse,
    PriceUpdate,
    SellerConfirmSentRequest,
    SellerInitiateRequest,
    SellerRejectRequest,
    TradeCreate,
    TradeFilters,
    TradeHistoryResponse,
    TradeListResponse,
    TradeRecord,
    TradeStats,
    TransferVerification,
    parse_transition_request,
)
from models.user import PartyInfo
from services.offer_service import OfferService
from services.realtime import ConnectionHub
from services.stores import OfferStore, TradeStore
from services.trade_service import TradeService
from services.transfer import ItemTransferClient

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="CS2 Trade API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Push sessions live as long as the process
app.state.hub = ConnectionHub()

# Supabase client, created on first use
supabase: Optional[Client] = None

transfer_client = ItemTransferClient(settings.transfer_api_url, settings.transfer_timeout_seconds)


def get_supabase() -> Client:
    global supabase
    if supabase is None:
        supabase = create_client(settings.supabase_url, settings.supabase_key)
    return supabase


def trade_service() -> TradeService:
    return TradeService(
        TradeStore(get_supabase(), settings.trade_table),
        app.state.hub,
        transfer_client,
        settings,
    )


def offer_service() -> OfferService:
    return OfferService(
        OfferStore(get_supabase(), settings.offer_table),
        trade_service(),
        app.state.hub,
        settings,
    )


def get_current_user(
    x_user_id: str = Header(..., alias="X-User-Id", min_length=1),
    x_user_name: Optional[str] = Header(None, alias="X-User-Name"),
    x_user_avatar: Optional[str] = Header(None, alias="X-User-Avatar"),
    x_trade_url: Optional[str] = Header(None, alias="X-Trade-Url"),
) -> PartyInfo:
    """Identity as forwarded by the identity provider."""
    return PartyInfo(
        user_id=x_user_id,
        display_name=x_user_name,
        avatar=x_user_avatar,
        trade_url=x_trade_url,
    )


@app.exception_handler(TradeError)
async def trade_error_handler(request: Request, exc: TradeError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/")
def read_root():
    return {"message": "CS2 Trade API"}


@app.get("/health")
def health_check():
    return {"status": "healthy"}


# ============== Trade Endpoints ==============

@app.post("/trades", response_model=TradeRecord, status_code=201)
async def create_trade(trade: TradeCreate, user: PartyInfo = Depends(get_current_user)):
    """Buyer purchases a listed item; the trade starts in awaiting_seller."""
    return await trade_service().create_trade(user, trade)


@app.get("/trades", response_model=TradeListResponse)
async def list_trades(
    role: Literal["buyer", "seller", "any"] = Query("any"),
    status_class: Literal["active", "historical", "all"] = Query("all"),
    user: PartyInfo = Depends(get_current_user),
):
    """Trades where the user is a party, newest first."""
    trades = trade_service().list_trades(user.user_id, TradeFilters(role=role, status_class=status_class))
    return TradeListResponse(trades=trades, total=len(trades))


@app.get("/trades/stats", response_model=TradeStats)
async def get_trade_stats(user: PartyInfo = Depends(get_current_user)):
    return trade_service().stats(user.user_id)


@app.get("/trades/{trade_id}", response_model=TradeRecord)
async def get_trade(trade_id: str, user: PartyInfo = Depends(get_current_user)):
    return trade_service().get_trade(trade_id, user.user_id)


@app.get("/trades/{trade_id}/history", response_model=TradeHistoryResponse)
async def get_trade_history(trade_id: str, user: PartyInfo = Depends(get_current_user)):
    """Status log of one trade in append order."""
    history = trade_service().get_history(trade_id, user.user_id)
    return TradeHistoryResponse(trade_id=trade_id, history=history, total=len(history))


@app.post("/trades/{trade_id}/transition", response_model=TradeRecord)
async def transition_trade(
    trade_id: str,
    payload: dict[str, Any] = Body(...),
    user: PartyInfo = Depends(get_current_user),
):
    """
    Apply one action, selected by the "action" field of the body.

    A counter-offer leaves the trade as it is and returns it; the counter
    itself is delivered to the buyer as an offer.
    """
    request = parse_transition_request(payload)
    if isinstance(request, CounterOfferRequest):
        await offer_service().counter_trade(trade_id, user.user_id, request)
        return trade_service().get_trade(trade_id, user.user_id)
    return await trade_service().transition(trade_id, request, user.user_id)


@app.post("/trades/{trade_id}/seller-initiate", response_model=TradeRecord)
async def seller_initiate(trade_id: str, user: PartyInfo = Depends(get_current_user)):
    return await trade_service().transition(trade_id, SellerInitiateRequest(), user.user_id)


@app.post("/trades/{trade_id}/seller-confirm-sent", response_model=TradeRecord)
async def seller_confirm_sent(
    trade_id: str,
    body: SellerConfirmSentRequest,
    user: PartyInfo = Depends(get_current_user),
):
    """Seller reports the item was sent, with the external trade offer reference."""
    return await trade_service().transition(trade_id, body, user.user_id)


@app.post("/trades/{trade_id}/buyer-confirm", response_model=TradeRecord)
async def buyer_confirm(trade_id: str, user: PartyInfo = Depends(get_current_user)):
    return await trade_service().transition(trade_id, BuyerConfirmRequest(), user.user_id)


@app.post("/trades/{trade_id}/cancel", response_model=TradeRecord)
async def cancel_trade(
    trade_id: str,
    body: Optional[CancelRequest] = Body(None),
    user: PartyInfo = Depends(get_current_user),
):
    return await trade_service().transition(trade_id, body or CancelRequest(), user.user_id)


@app.post("/trades/{trade_id}/reject", response_model=TradeRecord)
async def reject_trade(
    trade_id: str,
    body: Optional[SellerRejectRequest] = Body(None),
    user: PartyInfo = Depends(get_current_user),
):
    return await trade_service().transition(trade_id, body or SellerRejectRequest(), user.user_id)


@app.post("/trades/{trade_id}/counter-offer", response_model=OfferRecord, status_code=201)
async def counter_trade(
    trade_id: str,
    body: CounterOfferRequest,
    user: PartyInfo = Depends(get_current_user),
):
    """Seller proposes a different price; the trade stays in awaiting_seller."""
    return await offer_service().counter_trade(trade_id, user.user_id, body)


@app.patch("/trades/{trade_id}/price", response_model=TradeRecord)
async def update_trade_price(
    trade_id: str,
    body: PriceUpdate,
    user: PartyInfo = Depends(get_current_user),
):
    return await trade_service().update_price(trade_id, user.user_id, body.price, body.currency)


@app.get("/trades/{trade_id}/verify-transfer", response_model=TransferVerification)
async def verify_transfer(trade_id: str, user: PartyInfo = Depends(get_current_user)):
    """Advisory check before the buyer confirms receipt. Never changes the trade."""
    return await trade_service().verify_item_transferred(trade_id, user.user_id)


# ============== Admin Endpoints ==============

@app.post("/admin/trades/expire", response_model=ExpirySweepResponse)
async def expire_stale(dry_run: bool = Query(False)):
    """
    Expire trades the seller never answered, fail trades never delivered,
    and expire pending offers past their deadline.

    Use dry_run=true to preview counts without updating anything.
    """
    expired, failed = await trade_service().expire_stale_trades(dry_run=dry_run)
    offers_expired = offer_service().expire_offers(dry_run=dry_run)
    return ExpirySweepResponse(
        trades_expired=expired,
        trades_failed=failed,
        offers_expired=offers_expired,
        dry_run=dry_run,
    )


# ============== Offer Endpoints ==============

@app.post("/offers", response_model=OfferRecord, status_code=201)
async def create_offer(offer: OfferCreate, user: PartyInfo = Depends(get_current_user)):
    """Propose an amount for a listed item. One pending offer per item and buyer."""
    return await offer_service().create_offer(user, offer)


@app.get("/offers/received", response_model=OfferListResponse)
async def get_received_offers(user: PartyInfo = Depends(get_current_user)):
    offers = offer_service().list_offers(user.user_id, "received")
    return OfferListResponse(offers=offers, total=len(offers), box="received")


@app.get("/offers/sent", response_model=OfferListResponse)
async def get_sent_offers(user: PartyInfo = Depends(get_current_user)):
    offers = offer_service().list_offers(user.user_id, "sent")
    return OfferListResponse(offers=offers, total=len(offers), box="sent")


@app.get("/offers/{offer_id}", response_model=OfferRecord)
async def get_offer(offer_id: str, user: PartyInfo = Depends(get_current_user)):
    return offer_service().get_offer(offer_id, user.user_id)


@app.post("/offers/{offer_id}/accept", response_model=OfferAcceptResponse)
async def accept_offer(offer_id: str, user: PartyInfo = Depends(get_current_user)):
    """Accept an offer; returns the trade it created or re-priced."""
    return await offer_service().accept(offer_id, user.user_id)


@app.post("/offers/{offer_id}/decline", response_model=OfferRecord)
async def decline_offer(offer_id: str, user: PartyInfo = Depends(get_current_user)):
    return await offer_service().decline(offer_id, user.user_id)


@app.post("/offers/{offer_id}/counter", response_model=OfferRecord, status_code=201)
async def counter_offer(offer_id: str, body: OfferCounter, user: PartyInfo = Depends(get_current_user)):
    return await offer_service().counter_offer(offer_id, user.user_id, body)


@app.post("/offers/{offer_id}/cancel", response_model=OfferRecord)
async def cancel_offer(offer_id: str, user: PartyInfo = Depends(get_current_user)):
    return await offer_service().cancel(offer_id, user.user_id)


# ============== Real-Time Channel ==============

def _error_event(detail: str, topic: Optional[str] = None) -> ChannelEvent:
    payload = {"detail": detail}
    if topic:
        payload["topic"] = topic
    return ChannelEvent(type=EventType.ERROR, payload=payload)


def handle_frame(hub: ConnectionHub, websocket: WebSocket, user_id: str, frame: ClientFrame) -> ChannelEvent:
    """Apply one client frame and return the reply for that session."""
    if frame.action == "ping":
        return ChannelEvent(type=EventType.PONG)

    topic = frame.topic
    if not topic:
        return _error_event(f"A topic is required to {frame.action}")

    if frame.action == "unsubscribe":
        hub.unsubscribe(websocket, topic)
        return ChannelEvent(type=EventType.UNSUBSCRIBED, payload={"topic": topic})

    kind, _, key = topic.partition(":")
    if kind == "trade" and key:
        try:
            trade_service().get_trade(key, user_id)
        except TradeError as e:
            return _error_event(e.message, topic)
    elif topic != user_topic(user_id):
        return _error_event("You can only subscribe to your own channel or your trades", topic)

    hub.subscribe(websocket, topic)
    return ChannelEvent(type=EventType.SUBSCRIBED, trade_id=key if kind == "trade" else None, payload={"topic": topic})


@app.websocket("/ws")
async def channel(websocket: WebSocket):
    """
    Push channel. Identify with the X-User-Id header (or ?user_id=).

    The session joins user:<id> on connect; send
    {"action": "subscribe", "topic": "trade:<id>"} while a trade panel is open.
    """
    user_id = websocket.headers.get("x-user-id") or websocket.query_params.get("user_id")
    if not user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    hub: ConnectionHub = app.state.hub
    await hub.connect(websocket, user_id)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = ClientFrame.model_validate_json(raw)
            except PydanticValidationError:
                await websocket.send_json(_error_event("Malformed frame").to_wire())
                continue
            reply = handle_frame(hub, websocket, user_id, frame)
            await websocket.send_json(reply.to_wire())
    except WebSocketDisconnect:
        logger.info("Channel session closed for user %s", user_id)
    finally:
        hub.disconnect(websocket)
