import logging
import time
from datetime import datetime
from typing import Annotated, Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, Path, Query, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

import security
from accounts import Accounts
from book import utcnow
from communities import Communities
from config import settings
from database import MAX_ROW_ID, get_db_connection, initialize_database
from errors import ServiceError, ValidationError
from library import Library
from notifications import Mailbox
from permissions import require_admin
from user import User

logger = logging.getLogger(__name__)

RowIdPath = Annotated[int, Path(ge=1, le=MAX_ROW_ID)]


# --- Request models ---
class RegisterModel(BaseModel):
    name: str
    email: str
    password: str
    phone: Optional[str] = None
    community_id: Optional[int] = Field(None, ge=1, le=MAX_ROW_ID)


class LoginModel(BaseModel):
    email: str
    password: str


class ProfileUpdateModel(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class AccessCodeModel(BaseModel):
    access_code: str


class AddUserModel(RegisterModel):
    role: str = "user"


class BookIdModel(BaseModel):
    book_id: int = Field(..., ge=1, le=MAX_ROW_ID)


class AssignModel(BaseModel):
    book_id: int = Field(..., ge=1, le=MAX_ROW_ID)
    user_id: int = Field(..., ge=1, le=MAX_ROW_ID)


class AddBookModel(BaseModel):
    community_id: int = Field(..., ge=1, le=MAX_ROW_ID)
    title: str
    author: Optional[str] = None
    borrow_days: Optional[int] = None
    genre: Optional[str] = None
    image_url: Optional[str] = None
    initial_holder_id: Optional[int] = Field(None, ge=1, le=MAX_ROW_ID)


class CommunityModel(BaseModel):
    name: str
    access_code: str
    description: Optional[str] = None


# --- Dependencies ---
bearer_scheme = HTTPBearer(auto_error=False)


def get_accounts(request: Request) -> Accounts:
    return request.app.state.accounts


def get_communities(request: Request) -> Communities:
    return request.app.state.communities


def get_library(request: Request) -> Library:
    return request.app.state.library


def get_mailbox(request: Request) -> Mailbox:
    return request.app.state.mailbox


def get_now(request: Request) -> datetime:
    return request.app.state.clock()


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    accounts: Accounts = Depends(get_accounts),
) -> User:
    """Resolve the bearer token to a user; raises AuthenticationError (401) otherwise."""
    token = credentials.credentials if credentials else None
    return accounts.authenticate(token)


router = APIRouter(prefix="/api")


# --- Users ---
@router.post("/users/register", status_code=201)
def register(payload: RegisterModel, accounts: Accounts = Depends(get_accounts), now: datetime = Depends(get_now)):
    user = accounts.register(payload.name, payload.email, payload.password, phone=payload.phone,
                             community_id=payload.community_id)
    return {"token": security.issue_token(user.id, now=now), "user": user.to_dict()}


@router.post("/users/login")
def login(payload: LoginModel, accounts: Accounts = Depends(get_accounts)):
    token, user = accounts.login(payload.email, payload.password)
    return {"token": token, "user": user.to_dict()}


@router.get("/users")
def list_users(user: User = Depends(get_current_user), accounts: Accounts = Depends(get_accounts)):
    return [u.to_dict() for u in accounts.list_users(user)]


@router.get("/users/me")
def me(user: User = Depends(get_current_user)):
    return user.to_dict()


@router.put("/users/profile")
def update_profile(payload: ProfileUpdateModel, user: User = Depends(get_current_user),
                   accounts: Accounts = Depends(get_accounts)):
    return accounts.update_profile(user, name=payload.name, email=payload.email, phone=payload.phone).to_dict()


@router.post("/users/join-community")
def join_community(payload: AccessCodeModel, user: User = Depends(get_current_user),
                   communities: Communities = Depends(get_communities)):
    return communities.join_community(user, payload.access_code).to_dict()


@router.post("/users/leave-community")
def leave_community(user: User = Depends(get_current_user), communities: Communities = Depends(get_communities)):
    return communities.leave_community(user).to_dict()


@router.post("/users/add", status_code=201)
def add_user(payload: AddUserModel, user: User = Depends(get_current_user), accounts: Accounts = Depends(get_accounts)):
    created = accounts.add_user(user, payload.name, payload.email, payload.password, phone=payload.phone,
                                role=payload.role, community_id=payload.community_id)
    return created.to_dict()


@router.delete("/users/{user_id}")
def delete_user(user_id: RowIdPath, user: User = Depends(get_current_user), accounts: Accounts = Depends(get_accounts)):
    deleted = accounts.delete_user(user, user_id)
    return {"message": f"User {deleted.name} deleted.", "id": deleted.id}


# --- Books ---
# Fixed paths are registered before /books/{book_id}.
@router.get("/books")
def list_books(user: User = Depends(get_current_user), library: Library = Depends(get_library),
               now: datetime = Depends(get_now)):
    return [b.to_dict(now) for b in library.list_books(user)]


@router.get("/books/overdue")
def overdue_books(user: User = Depends(get_current_user), library: Library = Depends(get_library),
                  now: datetime = Depends(get_now)):
    require_admin(user, "Only an administrator can see overdue books.")
    return [b.to_dict(now) for b in library.overdue_books(now)]


@router.get("/books/community/{community_id}")
def list_books_by_community(community_id: RowIdPath, user: User = Depends(get_current_user),
                            library: Library = Depends(get_library), now: datetime = Depends(get_now)):
    return [b.to_dict(now) for b in library.list_books_by_community(user, community_id)]


@router.post("/books/borrow")
def borrow_book(payload: BookIdModel, user: User = Depends(get_current_user), library: Library = Depends(get_library),
                now: datetime = Depends(get_now)):
    return library.borrow(user, payload.book_id).to_dict(now)


@router.post("/books/return-my-book")
def return_my_book(payload: BookIdModel, user: User = Depends(get_current_user),
                   library: Library = Depends(get_library), now: datetime = Depends(get_now)):
    return library.return_my_book(user, payload.book_id).to_dict(now)


@router.post("/books/add", status_code=201)
def add_book(payload: AddBookModel, user: User = Depends(get_current_user), library: Library = Depends(get_library),
             now: datetime = Depends(get_now)):
    book = library.add_book(user, payload.community_id, payload.title, author=payload.author,
                            borrow_days=payload.borrow_days, genre=payload.genre, image_url=payload.image_url,
                            initial_holder_id=payload.initial_holder_id)
    return book.to_dict(now)


@router.post("/books/assign")
def assign_book(payload: AssignModel, user: User = Depends(get_current_user), library: Library = Depends(get_library),
                now: datetime = Depends(get_now)):
    return library.assign(user, payload.book_id, payload.user_id).to_dict(now)


@router.post("/books/return")
def admin_return_book(payload: BookIdModel, user: User = Depends(get_current_user),
                      library: Library = Depends(get_library), now: datetime = Depends(get_now)):
    return library.admin_return(user, payload.book_id).to_dict(now)


@router.get("/books/{book_id}")
def get_book(book_id: RowIdPath, user: User = Depends(get_current_user), library: Library = Depends(get_library),
             now: datetime = Depends(get_now)):
    return library.get_book(user, book_id).to_dict(now)


@router.get("/books/{book_id}/history")
def book_history(book_id: RowIdPath, user: User = Depends(get_current_user), library: Library = Depends(get_library)):
    return [h.to_dict() for h in library.book_history(user, book_id)]


@router.delete("/books/{book_id}")
def delete_book(book_id: RowIdPath, user: User = Depends(get_current_user), library: Library = Depends(get_library)):
    book = library.delete_book(user, book_id)
    return {"message": f'"{book.title}" deleted.', "id": book.id}


# --- Communities ---
@router.get("/communities/public")
def public_communities(communities: Communities = Depends(get_communities)):
    return [c.public_dict() for c in communities.list_public_communities()]


@router.get("/communities")
def list_communities(user: User = Depends(get_current_user), communities: Communities = Depends(get_communities)):
    return [c.to_dict() for c in communities.list_communities(user)]


@router.post("/communities/create", status_code=201)
def create_community(payload: CommunityModel, user: User = Depends(get_current_user),
                     communities: Communities = Depends(get_communities)):
    community, member = communities.create_community(user, payload.name, payload.access_code, payload.description)
    return {"community": community.to_dict(), "user": member.to_dict()}


@router.post("/communities/add", status_code=201)
def add_community(payload: CommunityModel, user: User = Depends(get_current_user),
                  communities: Communities = Depends(get_communities)):
    return communities.add_community(user, payload.name, payload.access_code, payload.description).to_dict()


@router.delete("/communities/{community_id}")
def delete_community(community_id: RowIdPath, user: User = Depends(get_current_user),
                     communities: Communities = Depends(get_communities)):
    community = communities.delete_community(user, community_id)
    return {"message": f"Community {community.name} deleted.", "id": community.id}


@router.get("/communities/{community_id}/members")
def list_members(community_id: RowIdPath, user: User = Depends(get_current_user),
                 communities: Communities = Depends(get_communities)):
    return [m.to_dict() for m in communities.list_members(user, community_id)]


@router.delete("/communities/{community_id}/members/{user_id}")
def remove_member(community_id: RowIdPath, user_id: RowIdPath, user: User = Depends(get_current_user),
                  communities: Communities = Depends(get_communities)):
    return communities.remove_member(user, community_id, user_id).to_dict()


# --- Messages ---
@router.get("/messages")
def my_messages(user: User = Depends(get_current_user), mailbox: Mailbox = Depends(get_mailbox)):
    return [m.to_dict() for m in mailbox.get_my_messages(user)]


@router.get("/messages/unread-count")
def unread_count(user: User = Depends(get_current_user), mailbox: Mailbox = Depends(get_mailbox)):
    return {"count": mailbox.get_unread_count(user)}


@router.put("/messages/{message_id}/read")
def mark_as_read(message_id: RowIdPath, user: User = Depends(get_current_user), mailbox: Mailbox = Depends(get_mailbox)):
    return mailbox.mark_as_read(user, message_id).to_dict()


# --- Search & stats ---
@router.get("/search/users")
def search_users(phone: str = Query(..., description="Phone number or a part of it"),
                 user: User = Depends(get_current_user), accounts: Accounts = Depends(get_accounts)):
    return [u.to_dict() for u in accounts.search_users(user, phone)]


@router.get("/stats")
def stats(user: User = Depends(get_current_user), library: Library = Depends(get_library)):
    require_admin(user, "Only an administrator can see statistics.")
    return library.get_statistics()


def describe_validation_errors(errors) -> str:
    """Flatten FastAPI's error list into one readable line, e.g. ``title: Field required``."""
    parts = []
    for error in errors:
        # The first element names where the field came from (body, path, query).
        field_path = ".".join(str(part) for part in error.get("loc", ())[1:])
        parts.append(f"{field_path}: {error.get('msg')}" if field_path else str(error.get("msg")))
    return "; ".join(parts) or ValidationError.default_message


def create_app(db_file: Optional[str] = None, clock: Optional[Callable[[], datetime]] = None) -> FastAPI:
    """Build the API around one database file.

    Run with ``uvicorn api:create_app --factory``.
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    initialize_database(db_file)

    app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version, debug=settings.debug)
    app.state.db_file = db_file
    app.state.clock = clock or utcnow
    app.state.accounts = Accounts(db_file, clock)
    app.state.communities = Communities(db_file, clock)
    app.state.library = Library(db_file, clock)
    app.state.mailbox = Mailbox(db_file, clock)

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Method, path and status only; request bodies are never logged.
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f} ms)")
        return response

    # Services log their own refusals at WARNING.
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        logger.info(f"{request.method} {request.url.path} refused: {exc.code} ({exc.message})")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = ValidationError(describe_validation_errors(exc.errors()))
        logger.warning(f"{request.method} {request.url.path} rejected: {error.message}")
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.get("/health")
    def health():
        """Lightweight health probe with a quick database round trip."""
        db_ok = True
        try:
            conn = get_db_connection(db_file)
            try:
                conn.execute("SELECT 1")
            finally:
                conn.close()
        except Exception:
            logger.exception("Health check could not reach the database")
            db_ok = False
        return {
            "status": "healthy" if db_ok else "degraded",
            "timestamp": app.state.clock().isoformat(),
            "version": settings.app_version,
            "database": "ok" if db_ok else "unavailable",
        }

    app.include_router(router)
    return app
