"""
Local Presence API

Route groups:
- /api/cron: scheduler-triggered queue and citation sync batches
- /api/citations: citation audit provisioning
- /api/reviews: review replies
- /api/integrations: the agency's Google connection

Run: cd api && uvicorn main:app --reload
"""

import os
import logging

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
# Request lines from the provider clients are noise at INFO
logging.getLogger("httpx").setLevel(logging.WARNING)

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from routes import citations, cron, integrations, reviews

VERSION = "1.0.0"

app = FastAPI(
    title="Local Presence API",
    description="Resilient Google Business Profile and BrightLocal integrations",
    version=VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[os.getenv("FRONTEND_URL", "http://localhost:3000")],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type"],
)

ROUTERS = (
    (cron.router, "/api/cron", "cron"),
    (citations.router, "/api/citations", "citations"),
    (reviews.router, "/api/reviews", "reviews"),
    (integrations.router, "/api", "integrations"),
)

for router, prefix, tag in ROUTERS:
    app.include_router(router, prefix=prefix, tags=[tag])


@app.get("/health")
async def health():
    return {"status": "ok", "version": VERSION}
