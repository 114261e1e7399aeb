import logging
import math
import os

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from careercoach import app_context
from careercoach.app.routes.subscriptions import router as subscriptions_router
from careercoach.app.services.subscriptions import get_subscription_config


load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("careercoach")


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "careercoach"),
    user=os.getenv("DB_USER", "careercoach"),
    password=os.getenv("DB_PASSWORD", "careercoach"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)


def get_conn():
    return psycopg2.connect(**DB_CFG)


app_context.configure(get_conn=get_conn)

app = FastAPI(title="Career Coach Subscriptions API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_subscription_config().client_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(subscriptions_router)


@app.get("/api/healthz")
def healthz():
    return {"ok": True}
