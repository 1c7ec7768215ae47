"""
Webhook ingress for billing provider events.

Well-signed requests always get a 200 with the processing outcome, so the
provider stops redelivering; duplicates are absorbed by the event id.
"""
import hashlib
import hmac
import json

from fastapi import APIRouter, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from ..observability.logging import StructuredLogger

router = APIRouter(prefix="/billing", tags=["Billing"])
logger = StructuredLogger(__name__)

SIGNATURE_HEADER = "X-Billing-Signature"


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature)


@router.post("/webhook")
async def billing_webhook(request: Request,
                          x_billing_signature: str = Header(default=None)):
    services = request.app.state.services
    body = await request.body()
    if not verify_signature(services.settings.billing_webhook_secret, body, x_billing_signature):
        logger.warning("Billing webhook rejected: bad signature")
        raise HTTPException(status_code=401, detail="Invalid signature")
    try:
        event = json.loads(body)
    except ValueError:
        logger.warning("Billing webhook rejected: body is not JSON")
        raise HTTPException(status_code=400, detail="Body must be JSON")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    # the service does blocking database work
    result = await run_in_threadpool(services.subscriptions.apply_billing_event, event)
    return result.to_dict()
