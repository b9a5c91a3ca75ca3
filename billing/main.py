from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from billing.core.config import settings
from billing.core.firebase import init_firebase
from billing.core.database import engine, Base
import billing.models  # noqa: F401
from billing.api.v1.router import api_router
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Analytics sink (no-op unless analytics is enabled)
init_firebase()

# Create database tables (alembic upgrade head does the same for deployed databases)
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Subscription Billing API",
    version="1.0.0",
    debug=settings.debug,
    redirect_slashes=False,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.api_v1_str)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
