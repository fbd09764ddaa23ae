"""MMG payment API routes"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from app.core.security import require_user
from app.db.session import get_db
from app.models.user import User
from app.schemas.payments import CheckoutRequest, ConfirmPaymentRequest
from app.services.callback_service import handle_callback
from app.services.checkout_service import initiate_checkout
from app.services.confirmation_service import confirm_payment
from app.services.mmg_client import MMGClient, get_mmg_client
from app.services.reconciliation_service import get_payment_status

router = APIRouter(prefix="/api/mmg", tags=["payments"])
logger = logging.getLogger(__name__)

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


@router.post("/checkout")
async def create_checkout(
    request_data: CheckoutRequest,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    client: MMGClient = Depends(get_mmg_client)
):
    """Start an MMG hosted checkout and return the redirect URL"""
    return initiate_checkout(
        user,
        request_data.amount,
        db,
        client,
        currency=request_data.currency,
        description=request_data.description,
    )


async def _callback_token(request: Request) -> Optional[str]:
    token = request.query_params.get("token")
    if token:
        return token
    content_type = request.headers.get("content-type", "")
    if request.method == "POST" and content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        value = form.get("TOKEN") or form.get("token")
        return value if isinstance(value, str) else None
    return None


@router.api_route("/webhook", methods=["GET", "POST"])
async def mmg_webhook(request: Request, db: Session = Depends(get_db)):
    """MMG redirect callback

    Malformed tokens get a JSON 400; everything else ends in a 303 to the
    success or failure page.
    """
    token = await _callback_token(request)
    redirect_url = handle_callback(token, db)
    return RedirectResponse(url=redirect_url, status_code=303)


@router.post("/confirm-payment")
async def confirm_mmg_payment(
    request_data: ConfirmPaymentRequest,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    client: MMGClient = Depends(get_mmg_client)
):
    """Confirm a payment by MMG transaction id and activate the subscription"""
    return await confirm_payment(
        user,
        request_data.transaction_id,
        request_data.subscription_type,
        db,
        client,
    )


@router.get("/payments/{payment_id}")
def get_payment(
    payment_id: str,
    user: User = Depends(require_user),
    db: Session = Depends(get_db)
):
    """Poll the status of one of the user's payment attempts"""
    return get_payment_status(payment_id, user.id, db)
