from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from mailsync.api.deps import get_current_user_id, get_services, load_account
from mailsync.schemas import OutgoingMessage, ReplyRequest, SendMessageRequest, SendResult
from mailsync.services import MailServices

router = APIRouter()


def _outgoing(request: OutgoingMessage) -> OutgoingMessage:
    return OutgoingMessage(**request.model_dump(include=set(OutgoingMessage.model_fields)))


def _respond(result: SendResult):
    if result.success:
        return result
    status_code = 401 if result.requires_reauth else 400
    return JSONResponse(status_code=status_code, content=result.model_dump(mode='json'))


@router.post("/send", response_model=SendResult)
async def send_message(
    request: SendMessageRequest,
    user_id: str = Depends(get_current_user_id),
    services: MailServices = Depends(get_services),
):
    """Send an email from a connected account"""
    account = await load_account(services, request.account_id, user_id)
    return _respond(await services.sender.send(account, _outgoing(request)))


@router.post("/reply", response_model=SendResult)
async def reply_to_message(
    request: ReplyRequest,
    user_id: str = Depends(get_current_user_id),
    services: MailServices = Depends(get_services),
):
    """Reply to a stored or provider message, keeping it in the same thread"""
    account = await load_account(services, request.account_id, user_id)
    result = await services.sender.reply(account, request.original_message_id, _outgoing(request))
    return _respond(result)


@router.post("/draft", response_model=SendResult)
async def create_draft(
    request: SendMessageRequest,
    user_id: str = Depends(get_current_user_id),
    services: MailServices = Depends(get_services),
):
    account = await load_account(services, request.account_id, user_id)
    return _respond(await services.sender.create_draft(account, _outgoing(request)))
