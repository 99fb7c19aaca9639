"""Prompt templates for document verification, extraction and comparison.

All builders are pure: the same inputs always produce the same prompts, and
every interpolated value passes through ``sanitize_prompt_value`` first.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from trustflow.schemas.verification import CompanyContext, DocumentSubmission

MAX_VALUE_LENGTH = 200
REDACTED = "[redacted]"
NOT_PROVIDED = "Not provided"

INJECTION_PATTERNS = (
    re.compile(r"ignore.*previous.*instructions", re.IGNORECASE),
    re.compile(r"disregard.*system.*prompt", re.IGNORECASE),
    re.compile(r"pretend.*you.*are", re.IGNORECASE),
    re.compile(r"act.*as.*different", re.IGNORECASE),
    re.compile(r"bypass.*security", re.IGNORECASE),
    re.compile(r"reveal.*api.*key", re.IGNORECASE),
    re.compile(r"show.*your.*system.*prompt", re.IGNORECASE),
)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]+")

DOCUMENT_FIELD_HINTS = {
    "business_registration": "company name, registration number, registration date, country, business type",
    "kyc": "full name, ID number, issue date, expiry date, country, document type",
    "bank_statement": "bank name, account number, account holder, statement period, currency",
    "tax_certificate": "tax ID number, company name, issue date, country, tax authority",
}
GENERIC_FIELD_HINTS = "company name, registration or ID number, issue date, expiry date, country"


@dataclass(frozen=True)
class PromptPair:
    """System and user prompt for one model call."""

    system: str
    user: str


def sanitize_prompt_value(value: Any, max_length: int = MAX_VALUE_LENGTH) -> str:
    """Make an arbitrary value safe to embed in a prompt.

    Control characters and newlines collapse to single spaces, the result is
    truncated, and values that look like prompt injection are redacted.
    """
    if value is None:
        return NOT_PROVIDED
    text = _CONTROL_CHARS.sub(" ", str(value))
    text = " ".join(text.split())
    if not text:
        return NOT_PROVIDED
    if any(pattern.search(text) for pattern in INJECTION_PATTERNS):
        return REDACTED
    if len(text) > max_length:
        text = text[: max_length - 3] + "..."
    return text


def quote_url(url: Optional[str]) -> str:
    """Embed a URL as a JSON string literal, or 'N/A' when absent."""
    if not url:
        return "N/A"
    return json.dumps(sanitize_prompt_value(url, max_length=2048))


def field_hints(document_type: str) -> str:
    return DOCUMENT_FIELD_HINTS.get(document_type, GENERIC_FIELD_HINTS)


VERIFICATION_SYSTEM_PROMPT = """You are an AI document verification assistant for a B2B trade marketplace.
Your role is to verify uploaded documents for supplier verification.

Analyze the document and verify:
1. Document authenticity and validity
2. Whether it matches the expected document type ({document_type})
3. If it matches previously submitted documents (if provided)
4. Key information extraction ({field_hints})
5. Document quality and readability

Respond with a JSON object:
{{
  "verified": boolean - whether document is valid and matches requirements,
  "confidence": number (0-1) - confidence level in verification,
  "matches_previous": boolean - whether this matches previous submission (if provided),
  "document_type_match": boolean - whether document matches expected type,
  "extracted_info": {{
    "company_name": string or null,
    "registration_number": string or null,
    "issue_date": string or null,
    "expiry_date": string or null,
    "country": string or null
  }},
  "issues": string[] - array of issues found (empty if none),
  "recommendations": string[] - recommendations for improvement,
  "summary": string - brief summary of verification result
}}

Guidelines:
- Be strict but fair in verification
- Flag obvious mismatches or inconsistencies
- Extract key information accurately
- Confidence should reflect certainty level
- Return ONLY valid JSON (no code fences, no explanations)"""


def build_verification_prompt(
    document_type: str,
    submission: DocumentSubmission,
    company_context: Optional[CompanyContext] = None,
    previous_submission: Optional[DocumentSubmission] = None,
) -> PromptPair:
    """Build the verification prompt for one submission.

    The template varies only by ``document_type`` and whether a previous
    submission exists.
    """
    context = company_context or CompanyContext()
    doc_type = sanitize_prompt_value(document_type)

    system = VERIFICATION_SYSTEM_PROMPT.format(
        document_type=doc_type, field_hints=field_hints(document_type)
    )

    lines = [
        "Document Information:",
        f"- Document URL: {quote_url(submission.file_url)}",
        f"- Document Type: {doc_type}",
        f"- Company Name: {sanitize_prompt_value(context.company_name)}",
        f"- Company Country: {sanitize_prompt_value(context.country)}",
        f"- Business ID Number: {sanitize_prompt_value(context.business_id_number)}",
        "",
    ]
    if previous_submission is not None:
        lines += [
            "Previous Document (for comparison):",
            f"- Previous URL: {quote_url(previous_submission.file_url)}",
            f"- Previous Upload Date: {previous_submission.uploaded_at.isoformat()}",
            "",
            "Please verify if the new document matches the previous submission.",
        ]
    else:
        lines.append(f"No previous document found. Verify this is a valid {doc_type} document.")
    lines += ["", "Analyze the document and provide verification results."]

    return PromptPair(system=system, user="\n".join(lines))


COMPARISON_SYSTEM_PROMPT = """You are an AI document comparison assistant for a B2B trade marketplace.
Compare two documents of type "{document_type}" to determine if they match.

Analyze:
1. Whether documents are the same or different versions
2. Key information consistency (company name, registration numbers, dates)
3. Visual similarity (if images)
4. Content similarity (if text-based)

Respond with JSON:
{{
  "matches": boolean - whether documents match,
  "confidence": number (0-1) - confidence in match result,
  "differences": string[] - list of differences found,
  "similarities": string[] - list of similarities found,
  "is_same_document": boolean - whether it's the same document,
  "is_updated_version": boolean - whether it's an updated version,
  "summary": string - brief comparison summary
}}"""


def _format_fields(fields: Optional[Mapping[str, Any]]) -> str:
    if not fields:
        return "  (none extracted)"
    return "\n".join(
        f"  - {sanitize_prompt_value(key, max_length=60)}: {sanitize_prompt_value(value)}"
        for key, value in sorted(fields.items())
    )


def build_comparison_prompt(
    document_type: str,
    previous_submission: DocumentSubmission,
    current_submission: DocumentSubmission,
    previous_fields: Optional[Mapping[str, Any]] = None,
    current_fields: Optional[Mapping[str, Any]] = None,
) -> PromptPair:
    """Build the prompt comparing the previous and the new submission."""
    doc_type = sanitize_prompt_value(document_type)
    system = COMPARISON_SYSTEM_PROMPT.format(document_type=doc_type)

    lines = [
        f"Compare these two {doc_type} documents:",
        f"- Document 1 (previous): {quote_url(previous_submission.file_url)}",
        f"- Document 2 (new): {quote_url(current_submission.file_url)}",
    ]
    if previous_fields or current_fields:
        lines += [
            "",
            "Fields extracted from Document 1:",
            _format_fields(previous_fields),
            "Fields extracted from Document 2:",
            _format_fields(current_fields),
        ]
    lines += ["", "Determine if they match and provide detailed comparison."]
    return PromptPair(system=system, user="\n".join(lines))


EXTRACTION_SYSTEM_PROMPT = """You are an AI document information extraction assistant.
Extract key information from {document_type} documents.

Extract these fields: {field_hints}

Respond with JSON:
{{
  "extracted_fields": {{
    "field_name": "value or null"
  }},
  "confidence": number (0-1),
  "readable": boolean - whether document is readable,
  "complete": boolean - whether all expected fields were found,
  "summary": string
}}"""


def build_extraction_prompt(document_type: str, submission: DocumentSubmission) -> PromptPair:
    """Build the prompt for standalone field extraction."""
    doc_type = sanitize_prompt_value(document_type)
    system = EXTRACTION_SYSTEM_PROMPT.format(
        document_type=doc_type, field_hints=field_hints(document_type)
    )
    user = (
        f"Extract information from this {doc_type} document:\n"
        f"{quote_url(submission.file_url)}\n\n"
        "Provide all extractable information."
    )
    return PromptPair(system=system, user=user)
