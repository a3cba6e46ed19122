import logging
import secrets
import time
from typing import Literal, Optional, Union

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import build_token_verifier, get_admin_user_id, get_current_user_id
from .config import Settings
from .envelope import Envelope, err, ok
from .errors import InvalidRequest, LedgerServiceError
from .logging_setup import configure_logging
from .models import (
    AdminProductListResponse,
    BalanceResponse,
    PageMeta,
    Product,
    ProductListResponse,
    ProductOut,
    ProductUpdate,
    PurchaseRequest,
    PurchaseResponse,
    RegisterResponse,
    RewardRequest,
    RewardResponse,
    TransactionHistoryResponse,
    TransactionOut,
)
from .service import LedgerService
from .storage import InMemoryStorage, SQLStorage
from .verifier import StoreKitVerifier

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    status.HTTP_400_BAD_REQUEST: "bad_request",
    status.HTTP_401_UNAUTHORIZED: "unauthorized",
    status.HTTP_403_FORBIDDEN: "forbidden",
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_405_METHOD_NOT_ALLOWED: "method_not_allowed",
}


def build_storage(settings: Settings) -> Union[InMemoryStorage, SQLStorage]:
    if not settings.database_url:
        return InMemoryStorage()
    return SQLStorage.from_url(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        connect_timeout=settings.db_connect_timeout,
    )


def build_service(settings: Settings, storage: Optional[Union[InMemoryStorage, SQLStorage]] = None) -> LedgerService:
    service = LedgerService(
        storage=storage or build_storage(settings),
        verifier=StoreKitVerifier(
            verify_signature=settings.verify_jws_signature,
            public_key=settings.storekit_public_key or None,
        ),
        reward_credits=settings.reward_credits,
        reward_daily_cap=settings.reward_daily_cap,
        signup_bonus_credits=settings.signup_bonus_credits,
    )
    for product in settings.seed_products:
        service.register_product(product)
    return service


def get_ledger_service(request: Request) -> LedgerService:
    return request.app.state.ledger_service


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def create_app(settings: Optional[Settings] = None, service: Optional[LedgerService] = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings)

    app = FastAPI(
        title="Credits Ledger API",
        description="Credits balance, usage debits, and in-app purchase crediting",
        version="1.0.0",
    )
    app.state.settings = settings
    app.state.ledger_service = service or build_service(settings)
    app.state.token_verifier = build_token_verifier(settings)

    origins = settings.cors_origins_list or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        request_id = request.headers.get(settings.request_id_header) or secrets.token_hex(8)
        request.state.request_id = request_id
        started = time.perf_counter()
        response = await call_next(request)
        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers[settings.request_id_header] = request_id
        logger.info(
            "http_request",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "latency_ms": latency_ms,
                "user_id": getattr(request.state, "user_id", None),
            },
        )
        return response

    _register_exception_handlers(app)
    _register_routes(app)
    _register_admin_routes(app)
    return app


def _envelope_response(request: Request, status_code: int, code: str, message: str,
                       details: Optional[dict] = None) -> JSONResponse:
    body = err(code, message, details, request=request)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(LedgerServiceError)
    async def ledger_error_handler(request: Request, exc: LedgerServiceError):
        if exc.status_code >= 500:
            logger.error("ledger_error", extra={"code": exc.code, "path": request.url.path, "error": exc.message})
        return _envelope_response(request, exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": [str(part) for part in e.get("loc", ())], "msg": e.get("msg"), "type": e.get("type")}
            for e in exc.errors()
        ]
        return _envelope_response(
            request, status.HTTP_400_BAD_REQUEST, InvalidRequest.code, "Validation failed",
            {"validationErrors": errors},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        code = _STATUS_CODES.get(exc.status_code, "internal_error")
        return _envelope_response(request, exc.status_code, code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", extra={"path": request.url.path})
        return _envelope_response(
            request, status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", "Internal Server Error",
        )


def _register_routes(app: FastAPI) -> None:
    @app.get("/health", tags=["System"])
    def health_check(request: Request):
        return ok({"status": "healthy", "service": "credits-ledger"}, request)

    @app.post("/users/register", response_model=Envelope[RegisterResponse], tags=["Users"])
    def register_user(
        request: Request,
        user_id: str = Depends(get_current_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
    ):
        account = ledger.open_account(user_id)
        return ok(
            RegisterResponse(user_id=account.user_id, credits=account.balance, created_at=account.created_at),
            request,
        )

    @app.get("/credits/balance", response_model=Envelope[BalanceResponse], tags=["Credits"])
    def get_balance(
        request: Request,
        user_id: str = Depends(get_current_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
    ):
        return ok(BalanceResponse(credits=ledger.get_balance(user_id)), request)

    @app.get("/credits/transactions", response_model=Envelope[TransactionHistoryResponse], tags=["Credits"])
    def list_transactions(
        request: Request,
        limit: Optional[int] = Query(default=None, ge=1),
        offset: int = Query(default=0, ge=0),
        user_id: str = Depends(get_current_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
        settings: Settings = Depends(get_settings),
    ):
        limit = limit or settings.history_default_limit
        if limit > settings.history_max_limit:
            raise InvalidRequest(f"limit must not exceed {settings.history_max_limit}")
        history = ledger.get_transaction_history(user_id, limit, offset)
        return ok(
            TransactionHistoryResponse(
                transactions=[TransactionOut.from_transaction(t) for t in history.transactions],
                meta=PageMeta(total=history.total, limit=history.limit, offset=history.offset),
            ),
            request,
        )

    @app.post("/credits/purchase", response_model=Envelope[PurchaseResponse], tags=["Credits"])
    def purchase(
        body: PurchaseRequest,
        request: Request,
        user_id: str = Depends(get_current_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
    ):
        result = ledger.process_purchase(user_id, body.transaction_data, body.product_id)
        return ok(
            PurchaseResponse(
                transaction_id=result.transaction_id,
                credits_added=result.credits_added,
                new_balance=result.new_balance,
            ),
            request,
        )

    @app.post("/credits/reward", response_model=Envelope[RewardResponse], tags=["Credits"])
    def reward(
        request: Request,
        body: Optional[RewardRequest] = None,
        user_id: str = Depends(get_current_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
    ):
        result = ledger.grant_reward(user_id, body.source if body else None)
        return ok(RewardResponse(credits_added=result.credits_added, new_balance=result.new_balance), request)

    @app.get("/iap/products", response_model=Envelope[ProductListResponse], tags=["IAP"])
    def list_products(request: Request, ledger: LedgerService = Depends(get_ledger_service)):
        products = [
            ProductOut(**p.model_dump(include=set(ProductOut.model_fields))) for p in ledger.list_products()
        ]
        return ok(ProductListResponse(products=products), request)


def _register_admin_routes(app: FastAPI) -> None:
    @app.get("/admin/iap-products", response_model=Envelope[AdminProductListResponse], tags=["Admin"])
    def admin_list_products(
        request: Request,
        limit: int = Query(default=50, ge=1, le=100),
        offset: int = Query(default=0, ge=0),
        search: Optional[str] = Query(default=None, max_length=100),
        is_active: Optional[bool] = Query(default=None),
        sort_by: str = Query(default="display_order"),
        sort_order: Literal["asc", "desc"] = Query(default="asc"),
        admin_id: str = Depends(get_admin_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
    ):
        page = ledger.list_admin_products(
            limit, offset, search=search, is_active=is_active, sort_by=sort_by, descending=sort_order == "desc",
        )
        return ok(
            AdminProductListResponse(
                products=page.products,
                meta=PageMeta(total=page.total, limit=page.limit, offset=page.offset),
            ),
            request,
        )

    @app.post(
        "/admin/iap-products",
        response_model=Envelope[Product],
        status_code=status.HTTP_201_CREATED,
        tags=["Admin"],
    )
    def admin_create_product(
        body: Product,
        request: Request,
        admin_id: str = Depends(get_admin_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
    ):
        return ok(ledger.create_product(body), request)

    @app.get("/admin/iap-products/{product_id}", response_model=Envelope[Product], tags=["Admin"])
    def admin_get_product(
        product_id: str,
        request: Request,
        admin_id: str = Depends(get_admin_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
    ):
        return ok(ledger.get_product(product_id), request)

    @app.put("/admin/iap-products/{product_id}", response_model=Envelope[Product], tags=["Admin"])
    def admin_update_product(
        product_id: str,
        body: ProductUpdate,
        request: Request,
        admin_id: str = Depends(get_admin_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
    ):
        return ok(ledger.update_product(product_id, body), request)

    @app.delete(
        "/admin/iap-products/{product_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
        tags=["Admin"],
    )
    def admin_delete_product(
        product_id: str,
        admin_id: str = Depends(get_admin_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
    ):
        ledger.delete_product(product_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/admin/iap-products/{product_id}/activate", response_model=Envelope[Product], tags=["Admin"])
    def admin_activate_product(
        product_id: str,
        request: Request,
        admin_id: str = Depends(get_admin_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
    ):
        return ok(ledger.set_product_active(product_id, True), request)

    @app.delete("/admin/iap-products/{product_id}/activate", response_model=Envelope[Product], tags=["Admin"])
    def admin_deactivate_product(
        product_id: str,
        request: Request,
        admin_id: str = Depends(get_admin_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
    ):
        return ok(ledger.set_product_active(product_id, False), request)


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
