"""
Turns Judit response entries into a relational case dataset.

Pure functions only: nothing here touches the database or the network. The
provider is loose about key names (documents/attachments/files, step_id/id,
name/nome/party_name, ...), so every field is read through a short list of
known aliases and sanitized on the way in.
"""
from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from app.utils.exceptions import NormalizationError
from app.utils.helpers import (
    normalize_process_number_digits,
    sanitize_text,
    to_optional_bool,
    to_optional_decimal,
    to_optional_int,
    to_optional_string,
)

ATTACHMENT_KEYS = ("documents", "attachments", "files")
_SUBJECT_SPLIT = re.compile(r"[;|,]")


class ResponseKind(str, enum.Enum):
    lawsuit = "lawsuit"
    application_info = "application_info"
    application_error = "application_error"
    unknown = "unknown"


@dataclass
class ProviderEntry:
    kind: ResponseKind
    raw: Dict[str, Any]
    request_id: Optional[str] = None
    response_id: Optional[str] = None
    origin: Optional[str] = None
    origin_id: Optional[str] = None


@dataclass
class DetailRow:
    process_number: str
    request_id: Optional[str] = None
    response_id: Optional[str] = None
    origin_id: Optional[str] = None
    instance: Optional[int] = None
    name: Optional[str] = None
    area: Optional[str] = None
    state: Optional[str] = None
    city: Optional[str] = None
    subject: Optional[str] = None
    status: Optional[str] = None
    tribunal_acronym: Optional[str] = None
    judging_body: Optional[str] = None
    distribution_date: Optional[str] = None
    free_justice: bool = False
    secrecy_level: Optional[int] = None
    justice: Optional[str] = None
    justice_description: Optional[str] = None
    amount: Optional[Decimal] = None
    last_step_id: Optional[str] = None
    main_classification_code: Optional[str] = None
    main_classification_name: Optional[str] = None


@dataclass
class SubjectRow:
    code: Optional[str]
    name: Optional[str]


@dataclass
class PartyRow:
    name: Optional[str]
    side: Optional[str] = None
    person_type: Optional[str] = None
    main_document: Optional[str] = None
    main_document_type: Optional[str] = None
    has_lawyers: bool = False


@dataclass
class MovementRow:
    step_id: str
    instance: Optional[int] = None
    step_type: Optional[str] = None
    content: Optional[str] = None
    step_date: Optional[str] = None
    private: bool = False
    crawl_id: Optional[str] = None


@dataclass
class AttachmentRow:
    origin: str  # process | step
    attachment_id: Optional[str] = None
    movement_step_id: Optional[str] = None
    instance: Optional[int] = None
    name: Optional[str] = None
    attachment_type: Optional[str] = None
    attachment_date: Optional[str] = None
    crawl_id: Optional[str] = None
    status: Optional[str] = None


@dataclass
class CaseDataset:
    process_number: str
    normalized_number: Optional[str]
    detail: DetailRow
    subjects: List[SubjectRow] = field(default_factory=list)
    parties: List[PartyRow] = field(default_factory=list)
    movements: List[MovementRow] = field(default_factory=list)
    attachments: List[AttachmentRow] = field(default_factory=list)

    def summary(self) -> Dict[str, int]:
        return {
            "parties": len(self.parties),
            "subjects": len(self.subjects),
            "movements": len(self.movements),
            "attachments": len(self.attachments),
        }


# ============================================================================
# Entry classification
# ============================================================================

def classify_response_type(value: Any) -> ResponseKind:
    text = (to_optional_string(value) or "").lower()
    try:
        return ResponseKind(text)
    except ValueError:
        return ResponseKind.unknown


def parse_response_entry(raw: Any) -> ProviderEntry:
    if not isinstance(raw, dict):
        return ProviderEntry(kind=ResponseKind.unknown, raw={"value": raw})
    return ProviderEntry(
        kind=classify_response_type(raw.get("response_type", raw.get("type"))),
        raw=raw,
        request_id=to_optional_string(raw.get("request_id", raw.get("requestId"))),
        response_id=to_optional_string(raw.get("response_id", raw.get("responseId"))),
        origin=to_optional_string(raw.get("origin")),
        origin_id=to_optional_string(raw.get("origin_id", raw.get("originId"))),
    )


def entries_from_pages(pages: Iterable[Any]) -> List[ProviderEntry]:
    entries: List[ProviderEntry] = []
    for page in pages:
        if not isinstance(page, dict):
            continue
        data = page.get("page_data")
        if not isinstance(data, list):
            continue
        entries.extend(parse_response_entry(item) for item in data if isinstance(item, dict))
    return entries


def lawsuit_entries(entries: Iterable[ProviderEntry]) -> List[ProviderEntry]:
    return [e for e in entries if e.kind == ResponseKind.lawsuit]


def application_errors(entries: Iterable[ProviderEntry]) -> List[str]:
    messages = []
    for entry in entries:
        if entry.kind != ResponseKind.application_error:
            continue
        data = _response_data(entry.raw)
        message = None
        if isinstance(data, dict):
            message = sanitize_text(data.get("message") or data.get("code"))
        messages.append(message or "Provider reported an application error")
    return messages


# ============================================================================
# Dataset building
# ============================================================================

def _response_data(raw: Dict[str, Any]) -> Any:
    for key in ("response_data", "result", "lawsuit", "data"):
        if raw.get(key) is not None:
            return raw[key]
    return raw


def _first_text(record: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = sanitize_text(record.get(key))
        if value:
            return value
    return None


def _first_value(record: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if record.get(key) is not None:
            return record[key]
    return None


def _subjects(data: Dict[str, Any]) -> List[SubjectRow]:
    rows: List[SubjectRow] = []
    subjects = data.get("subjects")
    if isinstance(subjects, list):
        for subject in subjects:
            if isinstance(subject, dict):
                code = sanitize_text(_first_value(subject, "code", "id"))
                name = sanitize_text(_first_value(subject, "name", "subject"))
                if code or name:
                    rows.append(SubjectRow(code=code, name=name))
            else:
                name = sanitize_text(subject)
                if name:
                    rows.append(SubjectRow(code=None, name=name))
    elif isinstance(data.get("subject"), str):
        tokens = [t for t in (sanitize_text(p) for p in _SUBJECT_SPLIT.split(data["subject"])) if t]
        if tokens:
            rows.extend(SubjectRow(code=None, name=t) for t in tokens)
        else:
            name = sanitize_text(data["subject"])
            if name:
                rows.append(SubjectRow(code=None, name=name))
    return rows


def _subject_header(data: Dict[str, Any]) -> Optional[str]:
    if isinstance(data.get("subject"), str):
        return sanitize_text(data["subject"])
    subjects = data.get("subjects")
    if not isinstance(subjects, list):
        return None
    collected = []
    for subject in subjects:
        if isinstance(subject, dict):
            value = _first_text(subject, "name", "subject", "code")
        else:
            value = sanitize_text(subject)
        if value:
            collected.append(value)
    return " | ".join(collected) or None


def _crawl_id(record: Dict[str, Any]) -> Optional[str]:
    tags = record.get("tags")
    return sanitize_text(tags.get("crawl_id")) if isinstance(tags, dict) else None


def _attachment(
    source: Any,
    origin: str,
    instance: Optional[int],
    step_id: Optional[str],
    fallback_date: Optional[str],
) -> Optional[AttachmentRow]:
    if source is None or isinstance(source, bool):
        return None
    if isinstance(source, (str, int, float)):
        return AttachmentRow(
            origin=origin,
            attachment_id=str(source),
            movement_step_id=step_id,
            instance=instance,
            attachment_date=fallback_date,
        )
    if not isinstance(source, dict):
        return None
    return AttachmentRow(
        origin=origin,
        attachment_id=to_optional_string(_first_value(source, "attachment_id", "id", "file_id")),
        movement_step_id=step_id or to_optional_string(source.get("step_id")),
        instance=instance,
        name=_first_text(source, "attachment_name", "name", "filename", "description"),
        attachment_type=_first_text(source, "extension", "type", "mime", "content_type"),
        attachment_date=to_optional_string(
            _first_value(source, "attachment_date", "created_at", "uploaded_at")
        ) or fallback_date,
        crawl_id=_crawl_id(source),
        status=sanitize_text(source.get("status")),
    )


def _attachments_of(
    record: Dict[str, Any],
    origin: str,
    instance: Optional[int],
    step_id: Optional[str] = None,
    fallback_date: Optional[str] = None,
) -> List[AttachmentRow]:
    rows: List[AttachmentRow] = []
    for key in ATTACHMENT_KEYS:
        items = record.get(key)
        if not isinstance(items, list):
            continue
        for item in items:
            row = _attachment(item, origin, instance, step_id, fallback_date)
            if row is not None:
                rows.append(row)
    return rows


def _parties(data: Dict[str, Any]) -> List[PartyRow]:
    rows: List[PartyRow] = []
    parties = data.get("parties")
    if not isinstance(parties, list):
        return rows
    for party in parties:
        if not isinstance(party, dict):
            continue
        documents = party.get("documents") if isinstance(party.get("documents"), list) else []
        first_doc = documents[0] if documents and isinstance(documents[0], dict) else {}
        lawyers = party.get("lawyers")
        rows.append(PartyRow(
            name=_first_text(party, "name", "nome", "party_name"),
            side=sanitize_text(_first_value(party, "side", "polo", "position")),
            person_type=sanitize_text(_first_value(party, "person_type", "type")),
            main_document=sanitize_text(party.get("main_document")) or _first_text(first_doc, "document", "number"),
            main_document_type=_first_text(first_doc, "document_type", "type"),
            has_lawyers=isinstance(lawyers, list) and any(bool(lawyer) for lawyer in lawyers),
        ))
    return rows


def build_dataset(entry: ProviderEntry, case_number: str) -> CaseDataset:
    """Normalize one lawsuit entry for the case identified by case_number."""
    data = _response_data(entry.raw)
    if not isinstance(data, dict):
        raise NormalizationError("Provider response carries no lawsuit data")

    code = to_optional_string(data.get("code")) or case_number
    normalized = normalize_process_number_digits(code) or normalize_process_number_digits(case_number)
    instance = to_optional_int(data.get("instance"))

    attachments = _attachments_of(data, "process", instance)

    movements: List[MovementRow] = []
    seen_steps = set()
    raw_steps = data.get("steps")
    steps = [s for s in raw_steps if isinstance(s, dict)] if isinstance(raw_steps, list) else []
    if isinstance(data.get("last_step"), dict):
        steps.append(data["last_step"])
    for step in steps:
        step_id = to_optional_string(_first_value(step, "step_id", "id"))
        if not step_id or step_id in seen_steps:
            continue
        seen_steps.add(step_id)
        step_date = to_optional_string(_first_value(step, "step_date", "date"))
        movements.append(MovementRow(
            step_id=step_id,
            instance=instance,
            step_type=sanitize_text(_first_value(step, "step_type", "type", "category")),
            content=sanitize_text(step.get("content")),
            step_date=step_date,
            private=bool(to_optional_bool(step.get("private"))),
            crawl_id=_crawl_id(step),
        ))
        attachments.extend(_attachments_of(step, "step", instance, step_id, step_date))

    classifications = data.get("classifications")
    first_class = classifications[0] if isinstance(classifications, list) and classifications and isinstance(classifications[0], dict) else {}
    last_step = data.get("last_step") if isinstance(data.get("last_step"), dict) else {}

    detail = DetailRow(
        process_number=code,
        request_id=entry.request_id,
        response_id=entry.response_id,
        origin_id=entry.origin_id,
        instance=instance,
        name=sanitize_text(data.get("name")),
        area=sanitize_text(data.get("area")),
        state=sanitize_text(data.get("state")),
        city=sanitize_text(data.get("city")),
        subject=_subject_header(data),
        status=sanitize_text(data.get("status")),
        tribunal_acronym=sanitize_text(data.get("tribunal_acronym")),
        judging_body=_first_text(data, "court", "county", "judging_body"),
        distribution_date=to_optional_string(data.get("distribution_date")),
        free_justice=bool(to_optional_bool(data.get("free_justice"))),
        secrecy_level=to_optional_int(data.get("secrecy_level")),
        justice=sanitize_text(data.get("justice")),
        justice_description=sanitize_text(data.get("justice_description")),
        amount=to_optional_decimal(data.get("amount")),
        last_step_id=to_optional_string(last_step.get("step_id")),
        main_classification_code=sanitize_text(first_class.get("code")),
        main_classification_name=sanitize_text(first_class.get("name")),
    )

    return CaseDataset(
        process_number=code,
        normalized_number=normalized,
        detail=detail,
        subjects=_subjects(data),
        parties=_parties(data),
        movements=movements,
        attachments=attachments,
    )


def select_best_dataset(entries: List[ProviderEntry], case_number: str) -> CaseDataset:
    """
    Prefer the lawsuit whose number matches the case (digits only); otherwise
    the first one returned.
    """
    lawsuits = lawsuit_entries(entries)
    if not lawsuits:
        raise NormalizationError("Provider returned no lawsuit data for this process")

    wanted = normalize_process_number_digits(case_number)
    first = build_dataset(lawsuits[0], case_number)
    if not wanted or first.normalized_number == wanted:
        return first
    for entry in lawsuits[1:]:
        candidate = build_dataset(entry, case_number)
        if candidate.normalized_number == wanted:
            return candidate
    return first
