import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gatherings import config
from gatherings.directory import AccessGuard, Directory, InMemoryDirectory, MongoDirectory
from gatherings.errors import GatheringServiceError, InternalError, ValidationError
from gatherings.lifecycle import GatheringLifecycle, Outcome
from gatherings.models import (
    ConfirmPresenceRequest,
    CreateGatheringRequest,
    DeclinePresenceRequest,
    LoginRequest,
    NotifyRequest,
    RegisterRequest,
    SubscribeRequest,
)
from gatherings.notifications import ExpoPushTransport, NotificationDispatcher, PushTransport
from gatherings.store import GatheringStore, InMemoryGatheringStore, MongoGatheringStore

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Dependencies ---

def get_lifecycle(request: Request) -> GatheringLifecycle:
    return request.app.state.lifecycle


def get_directory(request: Request) -> Directory:
    return request.app.state.directory


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


async def current_user(request: Request) -> str:
    identity = request.headers.get(config.IDENTITY_HEADER)
    return await request.app.state.guard.authenticate(identity)


def _with_notification(content: dict, outcome: Outcome) -> dict:
    if outcome.notification_error:
        content["notificationError"] = outcome.notification_error
    return content


# --- API ROUTES ---

@router.get("/")
async def health_check(request: Request):
    return {
        "status": "online",
        "storage": request.app.state.store.name,
        "time": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/gatherings", status_code=status.HTTP_201_CREATED)
async def create_gathering(body: CreateGatheringRequest, lifecycle: GatheringLifecycle = Depends(get_lifecycle)):
    outcome = await lifecycle.create(
        date=body.date,
        time=body.time,
        location=body.location,
        provided_items=body.provided_items,
        invited_users=body.invited_users,
        created_by=body.host_id,
    )
    return _with_notification({"success": True, "id": outcome.gathering.id}, outcome)


@router.get("/gatherings")
async def list_gatherings(status_filter: str = Query(..., alias="status"), lifecycle: GatheringLifecycle = Depends(get_lifecycle)):
    gatherings = await lifecycle.classify(status_filter)
    return {"success": True, "gatherings": [g.to_public() for g in gatherings]}


@router.get("/gatherings/{gathering_id}")
async def get_gathering(gathering_id: str, lifecycle: GatheringLifecycle = Depends(get_lifecycle)):
    gathering = await lifecycle.get_details(gathering_id)
    return {"success": True, "gathering": gathering.to_public()}


@router.post("/gatherings/{gathering_id}/confirm")
async def confirm_presence(gathering_id: str, body: ConfirmPresenceRequest,
                           lifecycle: GatheringLifecycle = Depends(get_lifecycle)):
    outcome = await lifecycle.confirm_presence(gathering_id, body.name, body.selected_items)
    return _with_notification({"success": True, "message": "Presence confirmed"}, outcome)


@router.post("/gatherings/{gathering_id}/decline")
async def decline_presence(gathering_id: str, body: DeclinePresenceRequest,
                           lifecycle: GatheringLifecycle = Depends(get_lifecycle)):
    outcome = await lifecycle.decline_presence(gathering_id, body.name)
    return _with_notification({"success": True, "message": "Presence declined"}, outcome)


@router.delete("/gatherings/{gathering_id}")
async def cancel_gathering(gathering_id: str, lifecycle: GatheringLifecycle = Depends(get_lifecycle)):
    outcome = await lifecycle.cancel(gathering_id)
    return _with_notification({"success": True, "message": "Gathering cancelled"}, outcome)


@router.get("/users/{user_id}/invites")
async def pending_invites(user_id: str, caller: str = Depends(current_user),
                          lifecycle: GatheringLifecycle = Depends(get_lifecycle)):
    AccessGuard.authorize_self(user_id, caller)
    invites = await lifecycle.list_pending_invites(user_id)
    return {"success": True, "invites": [g.to_public() for g in invites]}


@router.post("/users/register")
async def register_user(body: RegisterRequest, directory: Directory = Depends(get_directory)):
    user = await directory.register(body.username, body.display_name)
    return {"success": True, "username": user.username}


@router.post("/users/login")
async def login(body: LoginRequest, directory: Directory = Depends(get_directory)):
    user = await directory.record_login(body.username, body.endpoint)
    return {"success": True, "username": user.username, "endpoints": len(user.endpoints)}


@router.post("/notify")
async def notify(body: NotifyRequest, dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    if (body.topic is None) == (body.user_ids is None):
        raise ValidationError("Provide exactly one of 'topic' or 'userIds'")
    if body.topic is not None:
        receipt = await dispatcher.notify_topic(body.topic, body.title, body.body, body.payload)
    else:
        receipt = await dispatcher.notify_users(body.user_ids, body.title, body.body, body.payload)
    return {"success": True, "deliveryReceipt": receipt}


@router.post("/topics/{topic}/subscribe")
async def subscribe(topic: str, body: SubscribeRequest, dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    if not body.endpoint.strip():
        raise ValidationError("'endpoint' is required")
    dispatcher.topics.subscribe(topic, body.endpoint)
    return {"success": True, "topic": topic}


# --- ERROR HANDLERS ---

def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(GatheringServiceError)
    async def service_error(request: Request, exc: GatheringServiceError):
        if isinstance(exc, InternalError):
            logger.error(f"Storage failure on {request.url.path}: {exc.message}", exc_info=exc.cause)
        elif exc.http_status >= 500:
            logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
        else:
            logger.info(f"{exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        logger.info(f"Invalid payload on {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ValidationError("Invalid payload").to_response(),
        )

    @app.exception_handler(Exception)
    async def catch_all(request: Request, exc: Exception):
        logger.error(f"Failing request: {request.url} - Error: {exc}", exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": {"code": "INTERNAL_ERROR", "message": "Unexpected error"}},
        )


# --- APP FACTORY ---

def _default_backends():
    if config.STORAGE_BACKEND == "mongo":
        from gatherings import database

        db = database.connect()
        return (
            MongoGatheringStore(db[database.GATHERINGS_COLLECTION]),
            MongoDirectory(db[database.USERS_COLLECTION]),
        )
    if config.STORAGE_BACKEND != "memory":
        raise ValueError(f"Unknown STORAGE_BACKEND {config.STORAGE_BACKEND!r}")
    return InMemoryGatheringStore(), InMemoryDirectory()


def create_app(store: Optional[GatheringStore] = None, directory: Optional[Directory] = None,
               transport: Optional[PushTransport] = None, notification_mode: str = None,
               clock=datetime.now) -> FastAPI:
    logging.basicConfig(level=config.LOG_LEVEL)

    if store is None or directory is None:
        default_store, default_directory = _default_backends()
        store = store or default_store
        directory = directory or default_directory

    app = FastAPI(title="Gatherings API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    dispatcher = NotificationDispatcher(directory, transport or ExpoPushTransport())
    app.state.store = store
    app.state.directory = directory
    app.state.guard = AccessGuard(directory)
    app.state.dispatcher = dispatcher
    app.state.lifecycle = GatheringLifecycle(store, dispatcher, notification_mode=notification_mode, clock=clock)

    app.include_router(router)
    register_error_handlers(app)
    logger.info(f"Gatherings API ready (storage={store.name}, notifications={app.state.lifecycle.notification_mode})")
    return app


app = create_app()
