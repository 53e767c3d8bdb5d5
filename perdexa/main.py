import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from perdexa.api import admin, billing, cron, orders, webhooks
from perdexa.core.config import settings
from perdexa.core.errors import BillingError

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("perdexa")

app = FastAPI(title="Perdexa Billing API", version="1.0.0")

ALLOWED_ORIGINS = settings.get_allowed_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _with_cors(request: Request, response: JSONResponse) -> JSONResponse:
    # Error responses built here bypass the middleware's header injection
    origin = request.headers.get("origin")
    if origin and origin in ALLOWED_ORIGINS:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
    return response


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path} -> {exc.code}: {exc.message}")
    else:
        logger.info(f"[API] {request.method} {request.url.path} -> {exc.status_code} {exc.code}")
    return _with_cors(request, JSONResponse(status_code=exc.status_code, content=exc.to_dict()))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"[API] Unhandled exception on {request.method} {request.url.path}: {exc}")
    return _with_cors(request, JSONResponse(status_code=500, content={"error": "server_error"}))


app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])
app.include_router(orders.router, prefix="/orders", tags=["orders"])
app.include_router(billing.router, prefix="/billing", tags=["billing"])
app.include_router(cron.router, prefix="/cron", tags=["cron"])


@app.get("/")
async def root():
    return {"message": "Perdexa Billing API", "version": "1.0.0"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
