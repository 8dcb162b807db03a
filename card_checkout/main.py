import logging

from fastapi import FastAPI

from card_checkout.config import settings
from card_checkout.routes import router
from card_checkout.database import Base, engine

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Card Checkout Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)
