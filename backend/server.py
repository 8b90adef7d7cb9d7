from fastapi import FastAPI, APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
import os
import logging
from pathlib import Path
from typing import Optional
from datetime import datetime

# Import custom modules
from auth import get_current_user
from audit_service import AuditService
from financial_service import FinancialDocumentService
from permissions import PermissionChecker
from core.errors import WorkflowError
from core.document_utils import serialize_doc
from core.approval_workflow import ApprovalWorkflow
from core.approval_queue import ApprovalQueueService
from core.atomic_numbering import AtomicDocumentNumbering
from core.cancellation_engine import CancellationEngine
from core.ledger_posting import LedgerPostingHook
from core.refund_scheduler import RefundScheduler

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def connect_database() -> AsyncIOMotorClient:
    """MongoDB connection from MONGO_URL"""
    mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
    return AsyncIOMotorClient(mongo_url)


def create_app(db: Optional[AsyncIOMotorDatabase] = None) -> FastAPI:
    """
    Build the API application.

    All services are constructed once here and shared through app.state so
    route modules never open their own connections.
    """
    client = None
    if db is None:
        client = connect_database()
        db = client[os.environ.get('DB_NAME', 'realestate_backoffice')]

    app = FastAPI(
        title="Real Estate Back-Office - Approvals & Refunds",
        version="1.0.0",
        description="Two-tier financial approvals, sale cancellations and refund schedules"
    )

    # Initialize services
    audit_service = AuditService(db)
    cancellation_engine = CancellationEngine(db, audit_service)
    refund_scheduler = RefundScheduler(db, cancellation_engine, audit_service)
    ledger_hook = LedgerPostingHook(db)

    app.state.db = db
    app.state.audit_service = audit_service
    app.state.permission_checker = PermissionChecker(db)
    app.state.financial_service = FinancialDocumentService(db, audit_service)
    app.state.cancellation_engine = cancellation_engine
    app.state.refund_scheduler = refund_scheduler
    app.state.approval_queue = ApprovalQueueService(db)
    app.state.ledger_hook = ledger_hook
    app.state.workflows = {
        "receipt": ApprovalWorkflow(db, "receipt", audit_service, on_approved=ledger_hook),
        "expense": ApprovalWorkflow(db, "expense", audit_service, on_approved=ledger_hook),
        "refund": ApprovalWorkflow(
            db, "refund", audit_service, on_rejected=refund_scheduler.cancel_rejected_refund
        ),
    }

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(request: Request, exc: WorkflowError):
        logger.warning(f"[API] {request.method} {request.url.path} -> {exc.code}: {exc.message}")
        return JSONResponse(
            status_code=exc.http_status,
            content={"success": False, "error": {"code": exc.code, "message": exc.message}}
        )

    # Create router with /api prefix
    api_router = APIRouter(prefix="/api")

    # ============================================
    # HEALTH CHECK
    # ============================================

    @api_router.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow(),
            "version": "1.0.0"
        }

    # ============================================
    # AUDIT LOG ENDPOINTS
    # ============================================

    @api_router.get("/audit-logs")
    async def get_audit_logs(
        request: Request,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        action_type: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
        current_user: dict = Depends(get_current_user)
    ):
        """Get audit logs (Admin only)"""
        checker = request.app.state.permission_checker
        user = await checker.get_authenticated_user(current_user)
        await checker.check_admin_role(user)

        logs = await audit_service.get_audit_logs(
            entity_type=entity_type,
            entity_id=entity_id,
            action_type=action_type,
            user_id=user_id,
            limit=min(limit, 500)
        )
        return [serialize_doc(log) for log in logs]

    # Include routers. Per-kind approval routers come first so
    # /approval-queue is matched before /{id}.
    from approval_routes import (
        receipt_approval_router, expense_approval_router,
        refund_approval_router, approval_queue_router
    )
    from financial_routes import financial_router
    from refund_routes import refund_router
    from cancellation_routes import cancellation_router

    app.include_router(api_router)
    app.include_router(receipt_approval_router)
    app.include_router(expense_approval_router)
    app.include_router(refund_approval_router)
    app.include_router(approval_queue_router)
    app.include_router(financial_router)
    app.include_router(refund_router)
    app.include_router(cancellation_router)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def create_indexes():
        await AtomicDocumentNumbering(db).create_unique_constraints()
        await cancellation_engine.create_indexes()
        await refund_scheduler.create_indexes()
        logger.info("Indexes ensured")

    @app.on_event("shutdown")
    async def shutdown_db_client():
        if client is not None:
            client.close()

    return app


app = create_app()
