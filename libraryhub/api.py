import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request, Security, WebSocket
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from libraryhub import __version__
from libraryhub.config import settings
from libraryhub.database import get_db_connection, initialize_database
from libraryhub.errors import LibraryError, UnauthorizedError, ValidationError
from libraryhub.models import Role, User
from libraryhub.policy import Action, authorize
from libraryhub.security import create_access_token, decode_access_token
from libraryhub.services.borrowing import BorrowingService
from libraryhub.services.catalog import CatalogService
from libraryhub.services.notifications import NotificationService
from libraryhub.services.realtime import Connection, NotificationHub, PresenceRegistry
from libraryhub.services.users import UserService
from libraryhub.utils import Clock, to_iso, utcnow

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

WS_POLICY_VIOLATION = 1008


# --- Request bodies ---
class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(CamelModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Optional[Role] = None


class LoginRequest(CamelModel):
    email: str
    password: str


class ProfileUpdate(CamelModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    profile_picture: Optional[str] = Field(None, alias="profilePicture")


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(..., alias="currentPassword")
    new_password: str = Field(..., alias="newPassword", min_length=6)


class BookCreate(CamelModel):
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    isbn: str = Field(..., min_length=1)
    genre: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    published_date: Optional[datetime] = Field(None, alias="publishedDate")
    cover_image: Optional[str] = Field(None, alias="coverImage")
    total_copies: Optional[int] = Field(None, alias="totalCopies", ge=0)


class BookUpdate(CamelModel):
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    genre: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    published_date: Optional[datetime] = Field(None, alias="publishedDate")
    cover_image: Optional[str] = Field(None, alias="coverImage")
    total_copies: Optional[int] = Field(None, alias="totalCopies", ge=0)
    available_copies: Optional[int] = Field(None, alias="availableCopies", ge=0)


class BorrowRequest(CamelModel):
    book_id: str = Field(..., alias="bookId")
    user_id: str = Field(..., alias="userId")
    due_date: Optional[datetime] = Field(None, alias="dueDate")


class ReturnRequest(CamelModel):
    condition: Optional[str] = None


class NotificationCreate(CamelModel):
    user_id: Optional[str] = Field(None, alias="userId")
    user_ids: Optional[List[str]] = Field(None, alias="userIds")
    message: str = Field(..., min_length=1)
    type: str = "system"
    related_book_id: Optional[str] = Field(None, alias="relatedBookId")
    related_borrowing_id: Optional[str] = Field(None, alias="relatedBorrowingId")


class UserCreate(CamelModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Optional[Role] = None
    borrowing_limit: Optional[int] = Field(None, alias="borrowingLimit", ge=0)


class UserUpdate(CamelModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[Role] = None
    borrowing_limit: Optional[int] = Field(None, alias="borrowingLimit", ge=0)
    is_active: Optional[bool] = Field(None, alias="isActive")


# --- Dependencies ---
bearer_scheme = HTTPBearer(auto_error=False)


def get_users(request: Request) -> UserService:
    return request.app.state.users


def get_catalog(request: Request) -> CatalogService:
    return request.app.state.catalog


def get_borrowing(request: Request) -> BorrowingService:
    return request.app.state.borrowing


def get_notifications(request: Request) -> NotificationService:
    return request.app.state.notifications


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    users: UserService = Depends(get_users),
) -> Optional[User]:
    if credentials is None:
        return None
    return users.get_active_user(decode_access_token(credentials.credentials))


def get_current_user(user: Optional[User] = Depends(get_optional_user)) -> User:
    """Dependency resolving the bearer token to an active user."""
    if user is None:
        raise UnauthorizedError("Authentication required")
    return user


def require(action: Action) -> Callable[..., User]:
    def dependency(user: User = Depends(get_current_user)) -> User:
        authorize(user, action)
        return user

    return dependency


def _auth_payload(user: User) -> Dict[str, Any]:
    payload = user.to_dict()
    payload["token"] = create_access_token(user.id)
    return payload


# --- Auth ---
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


@auth_router.post("/register", status_code=201)
def register(
    body: RegisterRequest,
    creator: Optional[User] = Depends(get_optional_user),
    users: UserService = Depends(get_users),
):
    user = users.register(body.name, body.email, body.password, body.role, creator=creator)
    return _auth_payload(user)


@auth_router.post("/login")
def login(body: LoginRequest, users: UserService = Depends(get_users)):
    return _auth_payload(users.authenticate(body.email, body.password))


@auth_router.get("/profile")
def get_profile(user: User = Depends(get_current_user)):
    return user.to_dict()


@auth_router.put("/profile")
def update_profile(body: ProfileUpdate, user: User = Depends(get_current_user),
                   users: UserService = Depends(get_users)):
    updated = users.update_profile(user.id, body.name, body.email, body.profile_picture)
    return updated.to_dict()


@auth_router.put("/change-password")
def change_password(body: ChangePasswordRequest, user: User = Depends(get_current_user),
                    users: UserService = Depends(get_users)):
    users.change_password(user.id, body.current_password, body.new_password)
    return {"message": "Password updated successfully"}


# --- Books ---
books_router = APIRouter(prefix="/api/books", tags=["books"])


@books_router.get("")
def list_books(
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    title: Optional[str] = None,
    author: Optional[str] = None,
    genre: Optional[str] = None,
    available: Optional[bool] = None,
    sort: Optional[str] = None,
    catalog: CatalogService = Depends(get_catalog),
):
    return catalog.list_books(title, author, genre, available, sort, page, limit)


@books_router.get("/search")
def search_books(
    query: Optional[str] = None,
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    catalog: CatalogService = Depends(get_catalog),
):
    return catalog.search_books(query or "", page, limit)


@books_router.get("/{book_id}")
def get_book(book_id: str, catalog: CatalogService = Depends(get_catalog)):
    return catalog.get_book(book_id).to_dict()


@books_router.post("", status_code=201)
def create_book(body: BookCreate, _: User = Depends(require(Action.BOOK_CREATE)),
                catalog: CatalogService = Depends(get_catalog)):
    book = catalog.create_book(
        title=body.title,
        author=body.author,
        isbn=body.isbn,
        genre=body.genre,
        description=body.description,
        location=body.location,
        published_date=body.published_date,
        cover_image=body.cover_image,
        total_copies=body.total_copies,
    )
    return book.to_dict()


@books_router.put("/{book_id}")
def update_book(book_id: str, body: BookUpdate, _: User = Depends(require(Action.BOOK_UPDATE)),
                catalog: CatalogService = Depends(get_catalog)):
    return catalog.update_book(book_id, body.model_dump(exclude_unset=True)).to_dict()


@books_router.delete("/{book_id}")
def delete_book(book_id: str, _: User = Depends(require(Action.BOOK_DELETE)),
                catalog: CatalogService = Depends(get_catalog)):
    catalog.delete_book(book_id)
    return {"message": "Book removed"}


# --- Borrowings ---
borrowings_router = APIRouter(prefix="/api/borrowings", tags=["borrowings"])


@borrowings_router.post("", status_code=201)
def borrow_book(body: BorrowRequest, _: User = Depends(require(Action.BORROW)),
                borrowing: BorrowingService = Depends(get_borrowing)):
    record = borrowing.borrow(body.book_id, body.user_id, body.due_date)
    return {"message": "Book borrowed successfully", "borrowing": record.to_dict()}


@borrowings_router.put("/{borrowing_id}/return")
def return_book(
    borrowing_id: str,
    body: Optional[ReturnRequest] = Body(None),
    _: User = Depends(require(Action.RETURN)),
    borrowing: BorrowingService = Depends(get_borrowing),
):
    record = borrowing.return_book(borrowing_id, body.condition if body else None)
    return {"message": "Book returned successfully", "borrowing": record.to_dict()}


@borrowings_router.get("")
def list_borrowings(
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    user_id: Optional[str] = Query(None, alias="userId"),
    book_id: Optional[str] = Query(None, alias="bookId"),
    status: Optional[str] = None,
    overdue: bool = False,
    _: User = Depends(require(Action.BORROWING_LIST_ALL)),
    borrowing: BorrowingService = Depends(get_borrowing),
):
    return borrowing.list(user_id, book_id, status, overdue, page, limit)


@borrowings_router.get("/user/{user_id}")
def user_borrowing_history(
    user_id: str,
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    actor: User = Depends(get_current_user),
    borrowing: BorrowingService = Depends(get_borrowing),
):
    authorize(actor, Action.BORROWING_VIEW, user_id)
    return borrowing.history(user_id, page, limit)


@borrowings_router.get("/{borrowing_id}")
def get_borrowing_record(borrowing_id: str, actor: User = Depends(get_current_user),
                         borrowing: BorrowingService = Depends(get_borrowing)):
    record = borrowing.get(borrowing_id)
    authorize(actor, Action.BORROWING_VIEW, record.user_id)
    return borrowing.describe(record)


# --- Notifications ---
notifications_router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@notifications_router.get("/user/{user_id}")
def list_user_notifications(
    user_id: str,
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    unread_only: bool = Query(False, alias="unreadOnly"),
    actor: User = Depends(get_current_user),
    notifications: NotificationService = Depends(get_notifications),
):
    authorize(actor, Action.NOTIFICATION_LIST, user_id, message="Not authorized to access these notifications")
    return notifications.list_for_user(user_id, page, limit, unread_only)


@notifications_router.put("/user/{user_id}/read-all")
def mark_all_read(user_id: str, actor: User = Depends(get_current_user),
                  notifications: NotificationService = Depends(get_notifications)):
    updated = notifications.mark_all_read(user_id, actor)
    return {"message": "All notifications marked as read", "updated": updated}


@notifications_router.put("/{notification_id}/read")
def mark_read(notification_id: str, actor: User = Depends(get_current_user),
              notifications: NotificationService = Depends(get_notifications)):
    notification = notifications.mark_read(notification_id, actor)
    return {"message": "Notification marked as read", "notification": notification.to_dict()}


@notifications_router.post("", status_code=201)
def create_notification(body: NotificationCreate, _: User = Depends(require(Action.NOTIFICATION_BROADCAST)),
                        notifications: NotificationService = Depends(get_notifications)):
    if body.user_ids:
        created = notifications.broadcast(body.user_ids, body.message, body.type,
                                          body.related_book_id, body.related_borrowing_id)
        return {"message": f"Notification sent to {len(created)} user(s)",
                "notifications": [n.to_dict() for n in created]}
    if not body.user_id:
        raise ValidationError("userId or userIds is required")
    notification = notifications.create(body.user_id, body.type, body.message,
                                        body.related_book_id, body.related_borrowing_id)
    return notification.to_dict()


@notifications_router.delete("/{notification_id}")
def delete_notification(notification_id: str, actor: User = Depends(get_current_user),
                        notifications: NotificationService = Depends(get_notifications)):
    notifications.delete(notification_id, actor)
    return {"message": "Notification deleted"}


# --- Users ---
users_router = APIRouter(prefix="/api/users", tags=["users"])


@users_router.get("")
def list_users(
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    name: Optional[str] = None,
    email: Optional[str] = None,
    role: Optional[Role] = None,
    is_active: Optional[bool] = Query(None, alias="isActive"),
    _: User = Depends(require(Action.USER_LIST)),
    users: UserService = Depends(get_users),
):
    return users.list_users(name, email, role.value if role else None, is_active, page, limit)


@users_router.get("/{user_id}")
def get_user(user_id: str, actor: User = Depends(get_current_user), users: UserService = Depends(get_users)):
    authorize(actor, Action.USER_VIEW, user_id)
    return users.get_user(user_id).to_dict()


@users_router.post("", status_code=201)
def create_user(body: UserCreate, _: User = Depends(require(Action.USER_CREATE)),
                users: UserService = Depends(get_users)):
    user = users.create_user(body.name, body.email, body.password, body.role, body.borrowing_limit)
    return user.to_dict()


@users_router.put("/{user_id}")
def update_user(user_id: str, body: UserUpdate, _: User = Depends(require(Action.USER_UPDATE)),
                users: UserService = Depends(get_users)):
    return users.update_user(user_id, body.model_dump(exclude_unset=True)).to_dict()


@users_router.delete("/{user_id}")
def delete_user(user_id: str, actor: User = Depends(require(Action.USER_DELETE)),
                users: UserService = Depends(get_users)):
    users.delete_user(user_id, actor)
    return {"message": "User removed"}


# --- Health ---
def _health(message: str) -> Dict[str, Any]:
    database_ok = True
    try:
        conn = get_db_connection()
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception as e:
        logger.warning(f"Health check could not reach the database: {e}")
        database_ok = False
    return {
        "status": "ok",
        "message": message,
        "timestamp": to_iso(utcnow()),
        "database": "ok" if database_ok else "unavailable",
        "version": __version__,
    }


health_router = APIRouter(tags=["health"])


@health_router.get("/health")
def health():
    return _health("Server is running")


@health_router.get("/api/health")
def api_health():
    return _health(f"{settings.app_name} is running")


# --- Real-time channel ---
realtime_router = APIRouter()


def _bearer_from_websocket(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def _decode_frame(frame: dict) -> Any:
    # Binary frames and invalid JSON both decode to None
    text = frame.get("text")
    if text is None:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


@realtime_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    hub: NotificationHub = websocket.app.state.hub
    users: UserService = websocket.app.state.users
    connection = Connection(websocket)

    token = _bearer_from_websocket(websocket)
    try:
        if not token:
            raise UnauthorizedError("Authentication error")
        try:
            user_id = decode_access_token(token)
        except UnauthorizedError as e:
            raise UnauthorizedError("Authentication error") from e
        user = await run_in_threadpool(users.get_active_user, user_id)
    except UnauthorizedError as e:
        connection.close()
        logger.info(f"Rejected WebSocket connection: {e.message}")
        await websocket.close(code=WS_POLICY_VIOLATION, reason=e.message)
        return

    connection.authenticate(user)
    await websocket.accept()
    await hub.register(connection)
    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break
            await hub.handle_message(connection, _decode_frame(frame))
    finally:
        await hub.unregister(connection)


# --- Application factory ---
def _install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(LibraryError)
    async def library_error_handler(request: Request, exc: LibraryError):
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={"message": "Validation failed", "error": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.detail})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        content: Dict[str, Any] = {"message": "An unexpected error occurred"}
        if settings.is_development:
            content["error"] = str(exc)
        return JSONResponse(status_code=500, content=content)


def create_app(clock: Optional[Clock] = None) -> FastAPI:
    """Build the application with its own services and real-time hub."""
    clock = clock or utcnow
    presence = PresenceRegistry()
    hub = NotificationHub(presence)
    notifications = NotificationService(hub, clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        initialize_database()
        try:
            yield
        finally:
            await hub.close_all()

    app = FastAPI(title=settings.app_name, version=__version__, lifespan=lifespan)
    app.state.presence = presence
    app.state.hub = hub
    app.state.notifications = notifications
    app.state.users = UserService(clock)
    app.state.catalog = CatalogService(hub, clock)
    app.state.borrowing = BorrowingService(notifications, hub, clock)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _install_exception_handlers(app)

    for router in (health_router, auth_router, books_router, borrowings_router,
                   notifications_router, users_router, realtime_router):
        app.include_router(router)
    return app


app = create_app()
