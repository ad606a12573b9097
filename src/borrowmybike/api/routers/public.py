"""Public-facing routes (APP_ROLE=public)."""

from fastapi import APIRouter

from borrowmybike.api.routes import admin, bookings, settlements, webhooks_stripe

router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


router.include_router(bookings.router)
router.include_router(settlements.router)
router.include_router(admin.router)
router.include_router(webhooks_stripe.router)
