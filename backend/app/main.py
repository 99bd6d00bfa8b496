"""Main FastAPI application."""
from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from app.routes import subscription_router, stripe_router
from app.stripe_client import get_stripe_config

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="ProManage API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include all routers
app.include_router(subscription_router)
app.include_router(stripe_router)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.on_event("startup")
async def startup_event():
    """Warn about missing billing configuration on startup."""
    config = get_stripe_config()
    if not config["secret_key"]:
        logger.warning("[Stripe] STRIPE_PRIVATE_KEY not set - subscription changes will fail")
    if not config["webhook_secret"]:
        logger.warning("[Stripe] STRIPE_WEBHOOK_SECRET not set - webhook signatures will not be verified")
