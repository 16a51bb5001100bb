import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from otp_service.config import settings
from otp_service.database import init_db
from otp_service.routers import auth, health

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="OTP Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(auth.router, prefix="/api")
app.include_router(auth.router)  # Compatibility for clients calling /auth/* without /api.


@app.on_event("startup")
def startup() -> None:
    init_db()


@app.get("/")
def root():
    return {"status": "OTP service running"}
