from __future__ import annotations

import base64
import binascii
import io
import json
import logging
import time
from typing import Any

import PyPDF2
from openai import OpenAI
from pydantic import BaseModel, Field, ValidationError

from .config import Settings
from .errors import AnalysisError, ConfigurationError
from .identity import safe_text

logger = logging.getLogger("cosmic_cv.analysis")

MAX_RESUME_CHARS = 24_000

MISSION_CONTEXT: dict[str, str] = {
    "GLOBAL": "English-speaking / US market. ATS-friendly format, quantified achievements.",
    "EUROPE": "European market. Soft skills and adaptability.",
    "LOCAL": "Local / Latin American market. Relationships and regional experience.",
    "EXPLORATION": "Remote / digital nomad. Autonomy and digital tooling.",
}
DEFAULT_MISSION_CONTEXT = "General market."


class AnalysisReport(BaseModel):
    current_level: str
    success_probability: float = Field(ge=0, le=100)
    mission_analysis: str
    strengths: list[str]
    critical_gaps: list[str]
    flight_plan: list[str]


def decode_resume_file(file_base64: str) -> bytes:
    raw = safe_text(file_base64)
    if "," in raw and raw.lower().startswith("data:"):
        raw = raw.split(",", 1)[1]
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AnalysisError("Résumé file is not valid base64.") from exc


def extract_resume_text(contents: bytes, mime_type: str | None) -> str:
    normalized_type = safe_text(mime_type).lower() or "application/pdf"
    if normalized_type == "application/pdf":
        try:
            pdf_reader = PyPDF2.PdfReader(io.BytesIO(contents))
            pages = [page.extract_text() or "" for page in pdf_reader.pages]
        except Exception as exc:
            raise AnalysisError("Unable to read this PDF. Upload a text-based PDF.") from exc
        return "\n".join(pages).strip()
    if normalized_type.startswith("text/"):
        return contents.decode("utf-8", errors="ignore").strip()
    raise AnalysisError("Unsupported file type for analysis. Upload a PDF.")


def extract_llm_text(message_content: Any) -> str:
    if isinstance(message_content, str):
        return safe_text(message_content)
    if isinstance(message_content, list):
        parts: list[str] = []
        for item in message_content:
            text = item.get("text") if isinstance(item, dict) else getattr(item, "text", item)
            if isinstance(text, str):
                parts.append(text)
        return safe_text("\n".join(parts))
    return safe_text(message_content)


def is_transient_openai_error(exc: Exception) -> bool:
    return type(exc).__name__ in {"APIConnectionError", "APITimeoutError", "InternalServerError", "RateLimitError"}


def build_system_prompt(name: str, mission_id: str) -> str:
    context = MISSION_CONTEXT.get(safe_text(mission_id).upper(), DEFAULT_MISSION_CONTEXT)
    return (
        "You are a senior recruiter reviewing a CV. "
        f"Candidate: {name}. Target mission: {context} "
        "Address the candidate by name, be tactical and critical, and end on a motivating note. "
        "Reply with a strict JSON object with keys: current_level (string), success_probability (0-100 number), "
        "mission_analysis (string), strengths (string list), critical_gaps (string list), flight_plan (string list)."
    )


class CVAnalyzer:
    def __init__(self, settings: Settings, client: Any = None):
        self.settings = settings
        if client is None and settings.openai_api_key:
            client = OpenAI(api_key=settings.openai_api_key)
        self.client = client

    def _models(self) -> list[str]:
        models: list[str] = []
        for model in [self.settings.openai_model, *self.settings.openai_fallback_models]:
            if model and model not in models:
                models.append(model)
        return models

    def analyze(self, resume_text: str, name: str, mission_id: str) -> AnalysisReport:
        if self.client is None:
            raise ConfigurationError("OPENAI_API_KEY is not configured.")
        if not safe_text(resume_text):
            raise AnalysisError("No readable text found in the résumé.")

        system_prompt = build_system_prompt(name, mission_id)
        user_prompt = f"Analyze this CV for {name}.\n\n{resume_text[:MAX_RESUME_CHARS]}"
        last_error = "no model attempted"
        for model in self._models():
            for attempt in range(3):
                try:
                    response = self.client.chat.completions.create(
                        model=model,
                        messages=[
                            {"role": "system", "content": system_prompt},
                            {"role": "user", "content": user_prompt},
                        ],
                        temperature=0.4,
                        response_format={"type": "json_object"},
                    )
                    content = extract_llm_text(response.choices[0].message.content if response.choices else "")
                    return AnalysisReport.model_validate(json.loads(content))
                except (ValueError, ValidationError) as exc:
                    last_error = f"unparseable report from model {model}"
                    logger.error("OpenAI returned an invalid report for model '%s': %s", model, exc)
                    break
                except Exception as exc:
                    last_error = f"{type(exc).__name__} on model {model}"
                    logger.exception("OpenAI request failed for model '%s' (attempt %s).", model, attempt + 1)
                    if attempt < 2 and is_transient_openai_error(exc):
                        time.sleep(0.35 * (attempt + 1))
                        continue
                    break
        raise AnalysisError(f"AI analysis failed: {last_error}.")
