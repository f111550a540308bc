from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from .analysis import CVAnalyzer, decode_resume_file, extract_resume_text
from .checkout import build_checkout_url
from .config import Settings, load_settings
from .errors import AnalysisError, AuthenticationError, ConfigurationError, EmailDeliveryError, SignatureError, StorageError
from .identity import Identity, identity_from_request, safe_text
from .mailer import ReportMailer
from .models import AnalyzeRequest, CheckoutRequest, Lead, LeadRequest, SendReportRequest
from .polling import RetryPolicy, poll_entitlement, verification_state
from .resolver import EntitlementResolver
from .store import EntitlementStore, build_store
from .webhooks import SIGNATURE_HEADER, WebhookIngestor

logger = logging.getLogger("cosmic_cv.main")


def current_identity(request: Request) -> Identity:
    settings: Settings = request.app.state.settings
    try:
        return identity_from_request(request, settings.session_jwt_secret)
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


def entitlement_payload(resolution: Any, state: str) -> dict[str, Any]:
    return {
        "is_premium": resolution.entitled,
        "status": resolution.status,
        "source": resolution.source,
        "state": state,
    }


def create_app(
    settings: Settings | None = None,
    store: EntitlementStore | None = None,
    analyzer: CVAnalyzer | None = None,
    mailer: ReportMailer | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    if store is None:
        store = build_store(settings)
    store.init_schema()

    app = FastAPI(title="Cosmic CV backend")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_origin_regex=settings.cors_allow_origin_regex,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.store = store
    app.state.ingestor = WebhookIngestor(store, settings.webhook_secret)
    app.state.resolver = EntitlementResolver(store)
    app.state.analyzer = analyzer or CVAnalyzer(settings)
    app.state.mailer = mailer or ReportMailer(settings)
    app.state.verify_policy = RetryPolicy(
        max_attempts=settings.verify_max_attempts,
        interval_seconds=settings.verify_interval_seconds,
    )

    @app.get("/")
    def root() -> dict[str, str]:
        return {"message": "Cosmic CV backend running"}

    async def payment_webhook(request: Request) -> dict[str, Any]:
        raw_body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)
        ingestor: WebhookIngestor = request.app.state.ingestor
        try:
            outcome = await run_in_threadpool(ingestor.ingest, raw_body, signature)
        except SignatureError as exc:
            logger.warning("Rejected payment webhook: %s", exc)
            raise HTTPException(status_code=401, detail="Invalid signature") from exc
        except ConfigurationError as exc:
            logger.error("Payment webhook received but %s", exc)
            raise HTTPException(status_code=500, detail="Webhook is not configured") from exc
        except StorageError as exc:
            raise HTTPException(status_code=500, detail="Storage update failed") from exc
        return {"success": True, **outcome.model_dump()}

    app.add_api_route("/webhooks/payments", payment_webhook, methods=["POST"])
    app.add_api_route("/api/webhook", payment_webhook, methods=["POST"], include_in_schema=False)

    @app.get("/entitlement")
    def get_entitlement(request: Request) -> dict[str, Any]:
        identity = current_identity(request)
        resolution = request.app.state.resolver.check(identity)
        return entitlement_payload(resolution, verification_state(resolution))

    @app.post("/entitlement/verify")
    def verify_entitlement(request: Request) -> dict[str, Any]:
        identity = current_identity(request)
        result = poll_entitlement(request.app.state.resolver, identity, request.app.state.verify_policy)
        payload = entitlement_payload(result.resolution, result.state)
        payload["attempts"] = result.attempts
        return payload

    @app.post("/checkout")
    def create_checkout(data: CheckoutRequest, request: Request) -> dict[str, str]:
        identity = current_identity(request)
        email = identity.email or safe_text(data.email)
        try:
            checkout_url = build_checkout_url(request.app.state.settings.checkout_url, email, identity.user_id)
        except ConfigurationError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"checkout_url": checkout_url}

    @app.post("/leads")
    def save_lead(data: LeadRequest, request: Request) -> dict[str, Any]:
        lead = Lead(**data.model_dump())
        if not lead.email or not safe_text(lead.name):
            raise HTTPException(status_code=400, detail="Name and email are required.")
        try:
            request.app.state.store.save_lead(lead)
        except StorageError as exc:
            logger.exception("Failed to persist lead for %s", lead.email)
            raise HTTPException(status_code=500, detail="Unable to save lead right now.") from exc
        return {"success": True, "email": lead.email}

    @app.post("/analyze")
    def analyze(data: AnalyzeRequest, request: Request) -> dict[str, Any]:
        if not safe_text(data.file_base64) or not safe_text(data.mission_id) or not safe_text(data.name):
            raise HTTPException(status_code=400, detail="Incomplete payload.")
        analyzer: CVAnalyzer = request.app.state.analyzer
        try:
            contents = decode_resume_file(data.file_base64)
            resume_text = extract_resume_text(contents, data.mime_type)
        except AnalysisError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if not resume_text:
            raise HTTPException(status_code=400, detail="No readable text found in the uploaded file.")
        logger.info("Analyzing CV for mission %s (%s chars).", safe_text(data.mission_id), len(resume_text))
        try:
            report = analyzer.analyze(resume_text, safe_text(data.name), safe_text(data.mission_id))
        except ConfigurationError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        except AnalysisError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return report.model_dump()

    @app.post("/send-report")
    def send_report(data: SendReportRequest, request: Request) -> dict[str, Any]:
        mailer: ReportMailer = request.app.state.mailer
        try:
            message_id = mailer.send_report(data.email, data.name, data.pdf_base64, data.mission_title)
        except ConfigurationError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        except EmailDeliveryError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"success": True, "id": message_id}

    return app
