import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

import settings
from contact_store import SqliteContactStore
from db_models import AddContactRequest, ContactResponse, FinalResponse, IdentifyRequest
from db_setup import init_db
from exceptions import IdentityError
from identity import identify as identify_contact

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=settings.LOG_LEVEL,
)
logger = logging.getLogger(__name__)

router = APIRouter()


def get_store(request: Request) -> SqliteContactStore:
    return SqliteContactStore(request.app.state.db_path)


@router.get("/")
def root():
    return {"message": "Bitespeed API is up"}


@router.post("/identify", response_model=FinalResponse)
def identify(request: IdentifyRequest, store=Depends(get_store)):
    view = identify_contact(store, request.email, request.phoneNumber)

    return FinalResponse(
        contact=ContactResponse(
            primaryContactId=view.primary_id,
            emails=view.emails,
            phoneNumbers=view.phone_numbers,
            secondaryContactIds=view.secondary_ids,
        )
    )


@router.post("/add-contact")
def add_contact(request: AddContactRequest, store=Depends(get_store)):
    """Add a new contact to the database with all fields"""
    with store.transaction():
        contact = store.insert(request.to_contact())
    logger.info("Added contact %s (%s)", contact.id, contact.link_precedence.value)
    return {"message": "Contact added successfully", "contact_id": contact.id}


async def identity_error_handler(request: Request, exc: IdentityError):
    if exc.status_code < 500:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc)
    else:
        logger.error("%s %s failed", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


def create_app(db_path: Optional[str] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(app.state.db_path)
        logger.info("Contact store ready at %s", app.state.db_path)
        yield

    app = FastAPI(
        title="Bitespeed Contact Reconciliation API",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.db_path = str(db_path or settings.DB_NAME)
    app.add_exception_handler(IdentityError, identity_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
