import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from .config import Settings, settings
from .errors import (
    AlreadyExtended,
    BookUnavailable,
    CirculationError,
    Conflict,
    ExternalServiceError,
    Forbidden,
    NotFound,
    TransientStoreFailure,
    Unauthorized,
    ValidationError,
)
from .lifecycle import LoanLifecycleManager, build_manager
from .models import Book, Role, User
from .search import SearchField
from .users import has_capability, require_capability

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (NotFound, 404),
    (BookUnavailable, 400),
    (AlreadyExtended, 400),
    (ValidationError, 400),
    (Conflict, 409),
    (Unauthorized, 401),
    (Forbidden, 403),
    (TransientStoreFailure, 503),
)


# --- Models ---
class BookModel(BaseModel):
    book_id: int
    title: str
    author: str
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    description: Optional[str] = None
    total_copies: int
    available_copies: int
    created_at: Optional[str] = None


class BookCreateModel(BaseModel):
    title: str
    author: str
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    category_id: Optional[int] = None
    description: Optional[str] = None
    total_copies: int = Field(1, ge=1)


class BookIsbnCreateModel(BaseModel):
    isbn: str
    total_copies: int = Field(1, ge=1)
    category_id: Optional[int] = None


class BookUpdateModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    category_id: Optional[int] = None
    description: Optional[str] = None
    total_copies: Optional[int] = Field(None, ge=1)


class CategoryModel(BaseModel):
    category_id: int
    name: str
    description: Optional[str] = None


class CategoryCreateModel(BaseModel):
    name: str
    description: Optional[str] = None


class UserModel(BaseModel):
    user_id: int
    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    address: Optional[str] = None
    role: str
    is_active: bool
    created_at: Optional[str] = None


class RegisterModel(BaseModel):
    email: str
    password: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    address: Optional[str] = None


class LoginModel(BaseModel):
    email: str
    password: str


class LoginResponse(BaseModel):
    token: str
    user: UserModel


class UserUpdateModel(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class RoleUpdateModel(BaseModel):
    role: Role


class LoanCreateModel(BaseModel):
    reader_id: int
    book_id: int
    due_date: Optional[date] = None


class LoanModel(BaseModel):
    loan_id: int
    reader_id: int
    book_id: int
    librarian_id: Optional[int] = None
    loan_date: str
    due_date: str
    return_date: Optional[str] = None
    status: str
    extended: bool
    overdue: bool
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None


class ExtensionResponse(BaseModel):
    loan_id: int
    due_date: date


class ReservationCreateModel(BaseModel):
    book_id: int


class ReservationModel(BaseModel):
    reservation_id: int
    reader_id: int
    book_id: int
    reservation_date: str
    expiry_date: str
    status: str
    title: Optional[str] = None
    author: Optional[str] = None


class ReminderResponse(BaseModel):
    due_reminders: int
    overdue_notices: int


class StatsModel(BaseModel):
    titles: int
    total_copies: int
    available_copies: int
    unique_authors: int
    active_loans: int


# --- Security ---
bearer_scheme = HTTPBearer(auto_error=False)


def get_manager(request: Request) -> LoanLifecycleManager:
    return request.app.state.manager


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    manager: LoanLifecycleManager = Depends(get_manager),
) -> User:
    """Resolve the bearer token to an active user."""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    user = manager.users.resolve_token(credentials.credentials)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user


def requires(capability: str):
    """Dependency factory: the current user must hold ``capability``."""

    def dependency(user: User = Depends(get_current_user)) -> User:
        return require_capability(user, capability)

    return dependency


def create_app(config: Optional[Settings] = None, manager: Optional[LoanLifecycleManager] = None) -> FastAPI:
    config = config or settings
    manager = manager or build_manager(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager.db.initialize()
        try:
            yield
        finally:
            manager.db.close()

    app = FastAPI(title=config.app_name, version=config.app_version, lifespan=lifespan)
    app.state.manager = manager
    app.state.settings = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CirculationError)
    async def circulation_error_handler(request: Request, exc: CirculationError):
        status = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 500)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status, content={"detail": str(exc), "code": type(exc).__name__})

    # --- Health ---
    @app.get("/health")
    async def health():
        db_ok = True
        try:
            with manager.db.connection() as conn:
                conn.execute("SELECT 1")
        except CirculationError:
            db_ok = False
        return {
            "status": "healthy" if db_ok else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "db": db_ok,
        }

    # --- Auth ---
    @app.post("/auth/register", response_model=UserModel, status_code=201)
    def register(payload: RegisterModel):
        user = manager.users.register(
            payload.email, payload.password, payload.first_name, payload.last_name,
            phone=payload.phone, address=payload.address,
        )
        return user.to_dict()

    @app.post("/auth/login", response_model=LoginResponse)
    def login(payload: LoginModel):
        user = manager.users.authenticate(payload.email, payload.password)
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid email or password")
        return {"token": manager.users.issue_token(user), "user": user.to_dict()}

    @app.post("/auth/logout", status_code=204)
    def logout(
        credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
        user: User = Depends(get_current_user),
    ):
        manager.users.revoke_token(credentials.credentials)

    # --- Books ---
    @app.get("/books", response_model=List[BookModel])
    def list_books():
        return [b.to_dict() for b in manager.catalog.list_books()]

    @app.get("/books/search", response_model=List[BookModel])
    def search_books(query: str = Query(..., min_length=1), field: SearchField = SearchField.FULLTEXT):
        return [b.to_dict() for b in manager.catalog.search(query, field)]

    @app.get("/books/{book_id}", response_model=BookModel)
    def get_book(book_id: int):
        return manager.catalog.get_book(book_id).to_dict()

    @app.post("/books", response_model=BookModel, status_code=201,
              dependencies=[Depends(requires("manage_books"))])
    def add_book(payload: BookCreateModel):
        book = Book(**payload.model_dump())
        return manager.catalog.add_book(book).to_dict()

    @app.post("/books/isbn", response_model=BookModel, status_code=201,
              dependencies=[Depends(requires("manage_books"))])
    def add_book_by_isbn(payload: BookIsbnCreateModel):
        try:
            book = manager.catalog.add_book_by_isbn(payload.isbn, payload.total_copies, payload.category_id)
        except LookupError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ExternalServiceError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return book.to_dict()

    @app.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(requires("manage_books"))])
    def update_book(book_id: int, payload: BookUpdateModel):
        return manager.catalog.update_book(book_id, **payload.model_dump()).to_dict()

    @app.delete("/books/{book_id}", dependencies=[Depends(requires("manage_system"))])
    def delete_book(book_id: int):
        manager.catalog.delete_book(book_id)
        return {"message": f"Book {book_id} deleted"}

    @app.get("/stats", response_model=StatsModel, dependencies=[Depends(requires("view_reports"))])
    def stats():
        return manager.catalog.get_statistics()

    # --- Categories ---
    @app.get("/categories", response_model=List[CategoryModel])
    def list_categories():
        return [c.to_dict() for c in manager.catalog.list_categories()]

    @app.post("/categories", response_model=CategoryModel, status_code=201,
              dependencies=[Depends(requires("manage_books"))])
    def add_category(payload: CategoryCreateModel):
        return manager.catalog.add_category(payload.name, payload.description).to_dict()

    # --- Loans ---
    @app.post("/loans", response_model=LoanModel, status_code=201)
    def create_loan(payload: LoanCreateModel, librarian: User = Depends(requires("manage_loans"))):
        loan = manager.create_loan(payload.reader_id, payload.book_id, librarian.user_id, payload.due_date)
        return loan.to_dict()

    @app.put("/loans/{loan_id}/return", response_model=LoanModel,
             dependencies=[Depends(requires("manage_loans"))])
    def return_loan(loan_id: int):
        return manager.return_loan(loan_id).to_dict()

    @app.post("/loans/{loan_id}/extend", response_model=ExtensionResponse)
    def extend_loan(loan_id: int, user: User = Depends(requires("borrow_books"))):
        reader_id = None if has_capability(user, "manage_loans") else user.user_id
        new_due_date = manager.extend_loan(loan_id, requesting_reader_id=reader_id)
        return {"loan_id": loan_id, "due_date": new_due_date}

    @app.get("/loans/active", response_model=List[LoanModel], dependencies=[Depends(requires("manage_loans"))])
    def active_loans():
        return [loan.to_dict() for loan in manager.active_loans()]

    @app.get("/loans/user/{user_id}", response_model=List[LoanModel])
    def loan_history(user_id: int, user: User = Depends(get_current_user)):
        if user.user_id != user_id and not has_capability(user, "manage_loans"):
            raise HTTPException(status_code=403, detail="Not allowed to view this history")
        return [loan.to_dict() for loan in manager.loan_history(user_id)]

    # --- Reservations ---
    @app.post("/reservations", response_model=ReservationModel, status_code=201)
    def reserve(payload: ReservationCreateModel, user: User = Depends(requires("reserve_books"))):
        return manager.reserve(user.user_id, payload.book_id).to_dict()

    @app.get("/reservations/user", response_model=List[ReservationModel])
    def my_reservations(user: User = Depends(get_current_user)):
        return [r.to_dict() for r in manager.pending_reservations(user.user_id)]

    # --- Users ---
    @app.get("/users/{user_id}", response_model=UserModel)
    def get_user(user_id: int, user: User = Depends(get_current_user)):
        if user.user_id != user_id and not has_capability(user, "manage_readers"):
            raise HTTPException(status_code=403, detail="Not allowed to view this user")
        return manager.users.get(user_id).to_dict()

    @app.put("/users/{user_id}", response_model=UserModel)
    def update_user(user_id: int, payload: UserUpdateModel, user: User = Depends(get_current_user)):
        if user.user_id != user_id and not has_capability(user, "manage_users"):
            raise HTTPException(status_code=403, detail="Not allowed to edit this user")
        return manager.users.update_profile(user_id, **payload.model_dump()).to_dict()

    @app.put("/users/{user_id}/role", response_model=UserModel, dependencies=[Depends(requires("change_roles"))])
    def set_role(user_id: int, payload: RoleUpdateModel):
        return manager.users.set_role(user_id, payload.role).to_dict()

    # --- Notifications ---
    @app.post("/notifications/send-reminders", response_model=ReminderResponse,
              dependencies=[Depends(requires("manage_system"))])
    def send_reminders():
        return {
            "due_reminders": manager.send_due_reminders(),
            "overdue_notices": manager.send_overdue_notices(),
        }

    return app


app = create_app()
