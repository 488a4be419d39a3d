"""FastAPI application for patient/admin messaging."""

import logging
from datetime import datetime

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from resultspro.config import settings
from resultspro.db import db
from resultspro.errors import MessagingError
from resultspro.models import (
    ConversationResponse,
    CreateConversationRequest,
    ErrorResponse,
    ProgressResponse,
    SendMessageRequest,
    UnreadCountResponse,
    UpdateConversationRequest,
    UseTemplateRequest,
)
from resultspro.services.messaging import MessagingService, parse_role
from resultspro.services.milestones import MilestoneService
from resultspro.services.templates import TemplateService
from resultspro.sse import EventBus, create_sse_response, event_bus, event_stream
from resultspro_models import (
    Conversation,
    ConversationStatus,
    ConversationSummary,
    Message,
    MessageFilters,
    MessagePriority,
    MessageTemplate,
    MessageType,
    Milestone,
    Page,
    ProgressObservation,
    TemplateCategory,
    TemplateCreate,
    TemplateUpdate,
    UserRole,
    UserSession,
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Results Pro Messaging API",
    description="Patient/admin conversations, templates and milestones",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Services share the global database and event bus; tests override the getters
messaging_service = MessagingService(database=db, bus=event_bus)
template_service = TemplateService(database=db, messaging=messaging_service)
milestone_service = MilestoneService(database=db, bus=event_bus)

ERROR_STATUS = {
    "validation": 422,
    "not_found": 404,
    "persistence": 503,
}


@app.on_event("startup")
async def startup_event():
    """Configure logging and connect the database."""
    logging.basicConfig(level=settings.log_level)
    await db.connect()
    await db.ensure_tables_exist()
    logger.info(f"Results Pro API started ({settings.database_backend} backend)")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up on shutdown."""
    await template_service.drain()
    await db.disconnect()


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError):
    """Map service errors onto HTTP status codes."""
    status_code = ERROR_STATUS[exc.kind.value]
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    body = ErrorResponse(detail=str(exc), kind=exc.kind.value, retryable=exc.retryable)
    return JSONResponse(status_code=status_code, content=body.model_dump())


# ============= Dependencies =============


def get_messaging() -> MessagingService:
    return messaging_service


def get_templates() -> TemplateService:
    return template_service


def get_milestones() -> MilestoneService:
    return milestone_service


def get_event_bus() -> EventBus:
    return event_bus


def get_session(
    user_id: str | None = Header(alias="X-User-ID", default=None),
    role: str = Header(alias="X-User-Role", default=UserRole.PATIENT.value),
) -> UserSession:
    """Identify the caller from request headers."""
    if not user_id:
        raise HTTPException(status_code=401, detail="X-User-ID header is required")
    return UserSession(user_id=user_id, role=parse_role(role))


def require_admin(session: UserSession = Depends(get_session)) -> UserSession:
    if session.role != UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")
    return session


async def get_party_conversation(
    conversation_id: str,
    session: UserSession = Depends(get_session),
    messaging: MessagingService = Depends(get_messaging),
) -> Conversation:
    """Load a conversation the caller takes part in."""
    conversation = await messaging.get_conversation(conversation_id)
    if not conversation.has_party(session.user_id):
        raise HTTPException(status_code=403, detail="Not your conversation")
    return conversation


def other_party(conversation: Conversation, user_id: str) -> str:
    if user_id == conversation.patient_id:
        return conversation.admin_id
    return conversation.patient_id


# ============= Health & Info =============


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Results Pro Messaging API", "version": "0.1.0"}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "database": settings.database_backend}


# ============= Conversation Endpoints =============


@app.post("/conversations", response_model=Conversation)
async def create_conversation(
    request: CreateConversationRequest,
    session: UserSession = Depends(get_session),
    messaging: MessagingService = Depends(get_messaging),
):
    """Get or create the active conversation between a patient and an admin."""
    if session.user_id not in (request.patient_id, request.admin_id):
        raise HTTPException(status_code=403, detail="Caller must be a party")
    return await messaging.create_conversation(request.patient_id, request.admin_id)


@app.get("/conversations", response_model=Page[Conversation])
async def list_conversations(
    page: int = 1,
    page_size: int | None = None,
    session: UserSession = Depends(get_session),
    messaging: MessagingService = Depends(get_messaging),
):
    """List the caller's conversations, most recent activity first."""
    return await messaging.get_conversations(
        session.role, session.user_id, page=page, page_size=page_size
    )


@app.get("/conversations/summaries", response_model=Page[ConversationSummary])
async def list_conversation_summaries(
    page: int = 1,
    page_size: int | None = None,
    status: ConversationStatus | None = None,
    has_unread: bool = False,
    session: UserSession = Depends(get_session),
    messaging: MessagingService = Depends(get_messaging),
):
    """Inbox rows with names and latest-message previews.

    Args:
        status: Only conversations in this status
        has_unread: Only conversations with unread messages for the caller
    """
    return await messaging.get_conversation_summaries(
        session.role,
        session.user_id,
        page=page,
        page_size=page_size,
        status=status,
        has_unread=has_unread,
    )


@app.get("/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation: Conversation = Depends(get_party_conversation),
    messaging: MessagingService = Depends(get_messaging),
):
    """Get a conversation with its most recent messages."""
    messages = await messaging.get_messages(conversation.id)
    return ConversationResponse(conversation=conversation, messages=messages.items)


@app.get("/conversations/{conversation_id}/messages", response_model=Page[Message])
async def list_messages(
    page: int = 1,
    page_size: int | None = None,
    conversation: Conversation = Depends(get_party_conversation),
    messaging: MessagingService = Depends(get_messaging),
):
    """Page through a conversation; page 1 holds the newest messages."""
    return await messaging.get_messages(
        conversation.id, page=page, page_size=page_size
    )


@app.post("/conversations/{conversation_id}/messages", response_model=Message)
async def send_message(
    request: SendMessageRequest,
    conversation: Conversation = Depends(get_party_conversation),
    session: UserSession = Depends(get_session),
    messaging: MessagingService = Depends(get_messaging),
):
    """Send a message as the caller."""
    return await messaging.send_message(
        conversation_id=conversation.id,
        sender_id=session.user_id,
        recipient_id=request.recipient_id or other_party(conversation, session.user_id),
        content=request.content,
        message_type=request.message_type,
        priority=request.priority,
        attachments=request.attachments,
    )


@app.post("/conversations/{conversation_id}/read", response_model=Conversation)
async def mark_conversation_read(
    conversation: Conversation = Depends(get_party_conversation),
    session: UserSession = Depends(get_session),
    messaging: MessagingService = Depends(get_messaging),
):
    """Mark everything addressed to the caller as read."""
    return await messaging.mark_as_read(conversation.id, session.user_id)


@app.patch("/conversations/{conversation_id}", response_model=Conversation)
async def update_conversation(
    request: UpdateConversationRequest,
    conversation: Conversation = Depends(get_party_conversation),
    session: UserSession = Depends(require_admin),
    messaging: MessagingService = Depends(get_messaging),
):
    """Change status or reassign. Admins only."""
    updated = conversation
    if request.admin_id is not None:
        updated = await messaging.assign_conversation(conversation.id, request.admin_id)
    if request.status is not None:
        updated = await messaging.update_conversation_status(
            conversation.id, request.status
        )
    return updated


# ============= Message Search & Badge =============


@app.get("/messages/search", response_model=Page[Message])
async def search_messages(
    q: str | None = None,
    patient_id: str | None = None,
    message_type: MessageType | None = None,
    priority: MessagePriority | None = None,
    read_status: bool | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = 1,
    page_size: int | None = None,
    session: UserSession = Depends(get_session),
    messaging: MessagingService = Depends(get_messaging),
):
    """Search messages the caller can see.

    Patients only ever search their own messages; admins their own threads.
    """
    filters = MessageFilters(
        patient_id=session.user_id if session.role == UserRole.PATIENT else patient_id,
        admin_id=session.user_id if session.role == UserRole.ADMIN else None,
        message_type=message_type,
        priority=priority,
        read_status=read_status,
        search_query=q,
        date_from=date_from,
        date_to=date_to,
    )
    return await messaging.search_messages(filters, page=page, page_size=page_size)


@app.get("/unread/count", response_model=UnreadCountResponse)
async def get_unread_count(
    session: UserSession = Depends(get_session),
    messaging: MessagingService = Depends(get_messaging),
):
    """Get the caller's unread message count (for the inbox badge)."""
    count = await messaging.total_unread(session.role, session.user_id)
    return UnreadCountResponse(count=count)


# ============= Template Endpoints =============


@app.get("/templates", response_model=list[MessageTemplate])
async def list_templates(
    category: str | None = None,
    q: str | None = None,
    session: UserSession = Depends(require_admin),
    templates: TemplateService = Depends(get_templates),
):
    """Templates visible to the caller, optionally filtered."""
    if q:
        return await templates.search_templates(q, session.user_id, category=category)
    return await templates.list_templates(session.user_id, category=category)


@app.get("/templates/categories", response_model=list[TemplateCategory])
async def list_template_categories(
    session: UserSession = Depends(require_admin),
    templates: TemplateService = Depends(get_templates),
):
    return await templates.templates_by_category(session.user_id)


@app.get("/templates/quick-replies", response_model=list[MessageTemplate])
async def list_quick_replies(
    session: UserSession = Depends(require_admin),
    templates: TemplateService = Depends(get_templates),
):
    return await templates.quick_replies(session.user_id)


@app.post("/templates", response_model=MessageTemplate)
async def create_template(
    request: TemplateCreate,
    session: UserSession = Depends(require_admin),
    templates: TemplateService = Depends(get_templates),
):
    """Create a template owned by the caller."""
    return await templates.create_template(
        admin_id=session.user_id,
        title=request.title,
        content=request.content,
        category=request.category,
        is_global=request.is_global,
    )


async def get_owned_template(
    template_id: str,
    session: UserSession = Depends(require_admin),
    templates: TemplateService = Depends(get_templates),
) -> MessageTemplate:
    template = await templates.get_template(template_id)
    if template.admin_id != session.user_id:
        raise HTTPException(status_code=403, detail="Not your template")
    return template


@app.patch("/templates/{template_id}", response_model=MessageTemplate)
async def update_template(
    request: TemplateUpdate,
    template: MessageTemplate = Depends(get_owned_template),
    templates: TemplateService = Depends(get_templates),
):
    """Edit one of the caller's templates."""
    return await templates.update_template(
        template.id,
        title=request.title,
        content=request.content,
        category=request.category,
        is_global=request.is_global,
    )


@app.delete("/templates/{template_id}")
async def delete_template(
    template: MessageTemplate = Depends(get_owned_template),
    templates: TemplateService = Depends(get_templates),
):
    await templates.delete_template(template.id)
    return {"status": "deleted", "template_id": template.id}


@app.post("/templates/{template_id}/use", response_model=Message)
async def use_template(
    template_id: str,
    request: UseTemplateRequest,
    session: UserSession = Depends(require_admin),
    templates: TemplateService = Depends(get_templates),
    messaging: MessagingService = Depends(get_messaging),
):
    """Send a template into a conversation and count the use."""
    conversation = await messaging.get_conversation(request.conversation_id)
    if not conversation.has_party(session.user_id):
        raise HTTPException(status_code=403, detail="Not your conversation")
    return await templates.use_template(
        template_id=template_id,
        conversation_id=conversation.id,
        admin_id=session.user_id,
        recipient_id=request.recipient_id or other_party(conversation, session.user_id),
        message_type=request.message_type,
        priority=request.priority,
    )


# ============= Milestone Endpoints =============


def check_patient_access(patient_id: str, session: UserSession):
    if session.role == UserRole.PATIENT and session.user_id != patient_id:
        raise HTTPException(status_code=403, detail="Not your progress")


@app.post("/patients/{patient_id}/progress", response_model=ProgressResponse)
async def record_progress(
    patient_id: str,
    observation: ProgressObservation,
    session: UserSession = Depends(get_session),
    milestones: MilestoneService = Depends(get_milestones),
):
    """Log a progress observation and return any new milestones."""
    check_patient_access(patient_id, session)
    reached = await milestones.record_progress(patient_id, observation)
    return ProgressResponse(milestones=reached)


@app.get("/patients/{patient_id}/milestones", response_model=list[Milestone])
async def list_milestones(
    patient_id: str,
    session: UserSession = Depends(get_session),
    milestones: MilestoneService = Depends(get_milestones),
):
    check_patient_access(patient_id, session)
    return await milestones.list_milestones(patient_id)


# ============= Real-time Events =============


@app.get("/events")
async def events(
    request: Request,
    session: UserSession = Depends(get_session),
    bus: EventBus = Depends(get_event_bus),
):
    """Server-Sent Events stream for the caller."""
    return create_sse_response(event_stream(session.user_id, request, bus=bus))


# ============= Run =============


def run():
    """Run the application."""
    import uvicorn

    uvicorn.run(
        "resultspro.api:app",
        host=settings.host,
        port=settings.port,
        reload=True,
    )


if __name__ == "__main__":
    run()
