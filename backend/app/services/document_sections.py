"""Section extraction from document-analysis text.

The document-analysis collaborator has emitted several layouts over time.
Each section is looked up in a fixed priority order, and the first layout
that yields non-empty content wins:

1. XML-style tags:       <BRIEF_SUMMARY>...</BRIEF_SUMMARY>
2. Numbered headings:    2. BRIEF SUMMARY: ...
3. Bare headings:        BRIEF SUMMARY: ...
4. Bold markers:         **BRIEF_SUMMARY:** ...

The order is kept for compatibility with stored analyses; new producers
should emit the XML form only.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

NO_ANALYSIS = "No analysis available"
NO_BRIEF_SUMMARY = "No brief summary available"
NO_DETAILED_ANALYSIS = "No detailed analysis available"
DEFAULT_RECORD_TYPE = "Medical Record"
UNKNOWN_RECORD_TYPE = "Unknown"

_LEADING_DASHES = re.compile(r"^[-–—]+\s*")
_BANNER = re.compile(r"===\s*[^=]+\s*===")
_BOLD = re.compile(r"\*\*")


def _clean(text: str, strip_banners: bool = True) -> str:
    cleaned = _LEADING_DASHES.sub("", text.strip())
    if strip_banners:
        cleaned = _BANNER.sub("", cleaned)
    return _BOLD.sub("", cleaned)


def extract_tag_content(text: str | None, tag_name: str) -> str | None:
    """Content between ``<TAG>`` and ``</TAG>`` (case-insensitive), trimmed."""
    if not text:
        return None
    match = re.search(
        rf"<{re.escape(tag_name)}>\s*([\s\S]*?)\s*</{re.escape(tag_name)}>",
        text,
        re.IGNORECASE,
    )
    return match.group(1).strip() if match else None


@dataclass(frozen=True)
class SectionLayout:
    """Ordered fallbacks for one section."""

    tag: str
    patterns: tuple[re.Pattern[str], ...]
    default: str
    strip_banners: bool = True

    def extract(self, text: str) -> str:
        from_tag = extract_tag_content(text, self.tag)
        if from_tag:
            return _clean(from_tag, self.strip_banners)
        for pattern in self.patterns:
            match = pattern.search(text)
            if match and match.group(1):
                return _clean(match.group(1), self.strip_banners)
        return self.default


_I = re.IGNORECASE

BRIEF_SUMMARY = SectionLayout(
    tag="BRIEF_SUMMARY",
    patterns=(
        re.compile(r"2\.?\s*BRIEF SUMMARY:?\s*([\s\S]*?)(?=3\.?\s*DOCUMENT TYPE|DOCUMENT TYPE|\Z)", _I),
        re.compile(r"BRIEF SUMMARY:?\s*([\s\S]*?)(?=DOCUMENT TYPE|TYPE|DATE|\Z)", _I),
        re.compile(r"\*\*BRIEF_SUMMARY:\*\*([\s\S]*?)(?=\*\*RECORD_TYPE:|\Z)"),
    ),
    default=NO_BRIEF_SUMMARY,
)

DETAILED_ANALYSIS = SectionLayout(
    tag="DETAILED_ANALYSIS",
    patterns=(
        re.compile(r"1\.?\s*DETAILED ANALYSIS:?\s*([\s\S]*?)(?=2\.?\s*BRIEF SUMMARY|BRIEF SUMMARY|\Z)", _I),
        re.compile(r"DETAILED ANALYSIS:?\s*([\s\S]*?)(?=BRIEF SUMMARY|SUMMARY|DOCUMENT TYPE|DATE|\Z)", _I),
        re.compile(r"\*\*DETAILED_ANALYSIS:\*\*([\s\S]*?)(?=\*\*BRIEF_SUMMARY:|\Z)"),
    ),
    default=NO_DETAILED_ANALYSIS,
)

RECORD_TYPE = SectionLayout(
    tag="DOCUMENT_TYPE",
    patterns=(
        re.compile(r"3\.?\s*DOCUMENT TYPE:?\s*([\s\S]*?)(?=4\.?\s*DATE|DATE|\Z)", _I),
        re.compile(r"DOCUMENT TYPE:?\s*([\s\S]*?)(?=DATE|\Z)", _I),
        re.compile(r"\*\*RECORD_TYPE:\*\*([\s\S]*?)(?=\*\*DATE:|\Z)"),
    ),
    default=DEFAULT_RECORD_TYPE,
    strip_banners=False,
)

RECORD_DATE = SectionLayout(
    tag="DATE",
    patterns=(
        re.compile(r"4\.?\s*DATE:?\s*([\s\S]*?)\Z", _I),
        re.compile(r"DATE:?\s*([\s\S]*?)\Z", _I),
        re.compile(r"\*\*DATE:\*\*([\s\S]*?)\Z"),
    ),
    default="",
    strip_banners=False,
)


def extract_brief_summary(analysis: str | None) -> str:
    if not analysis:
        return NO_ANALYSIS
    return BRIEF_SUMMARY.extract(analysis)


def extract_detailed_analysis(analysis: str | None) -> str:
    if not analysis:
        return NO_ANALYSIS
    return DETAILED_ANALYSIS.extract(analysis)


def extract_record_type(analysis: str | None) -> str:
    if not analysis:
        return UNKNOWN_RECORD_TYPE
    return RECORD_TYPE.extract(analysis)


def extract_record_date(analysis: str | None) -> str:
    if not analysis:
        return ""
    return RECORD_DATE.extract(analysis)


# =============================================================================
# Embedded FHIR resources
# =============================================================================

_JSON_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def _bundle_resource(entry: dict[str, Any]) -> dict[str, Any]:
    resource = entry["resource"]
    full_url = entry.get("fullUrl") or ""
    # Transaction bundles identify entries by urn:uuid fullUrl
    if not resource.get("id") and full_url.startswith("urn:uuid:"):
        resource = {**resource, "id": full_url[len("urn:uuid:"):]}
    return resource


def _resources_from_json(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        if payload.get("resourceType") == "Bundle":
            return [
                _bundle_resource(e) for e in payload.get("entry", []) if isinstance(e, dict) and e.get("resource")
            ]
        if "resourceType" in payload:
            return [payload]
        return []
    if isinstance(payload, list):
        found: list[dict[str, Any]] = []
        for item in payload:
            found.extend(_resources_from_json(item))
        return found
    return []


def extract_embedded_resources(analysis: str | None) -> list[dict[str, Any]]:
    """FHIR resources embedded in the analysis text.

    Looks in a ``<FHIR_RESOURCES>`` block first, then in fenced JSON code
    blocks. Blocks that are not valid JSON are logged and ignored.
    """
    if not analysis:
        return []
    blocks = []
    tagged = extract_tag_content(analysis, "FHIR_RESOURCES")
    if tagged:
        blocks.append(tagged)
    else:
        blocks.extend(m.group(1) for m in _JSON_FENCE.finditer(analysis))

    resources: list[dict[str, Any]] = []
    for block in blocks:
        fenced = _JSON_FENCE.search(block)
        body = fenced.group(1) if fenced else block
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring malformed FHIR JSON block: {e}")
            continue
        resources.extend(_resources_from_json(payload))
    return resources


# =============================================================================
# Parsed analysis
# =============================================================================


@dataclass
class DocumentAnalysis:
    """Structured view of one document-analysis response."""

    brief_summary: str
    detailed_analysis: str
    record_type: str
    record_date: str
    raw_text: str = ""
    embedded_resources: list[dict[str, Any]] = field(default_factory=list)


def parse_document_analysis(analysis: str | None) -> DocumentAnalysis:
    """Extract every known section from a document-analysis response."""
    return DocumentAnalysis(
        brief_summary=extract_brief_summary(analysis),
        detailed_analysis=extract_detailed_analysis(analysis),
        record_type=extract_record_type(analysis),
        record_date=extract_record_date(analysis),
        raw_text=analysis or "",
        embedded_resources=extract_embedded_resources(analysis),
    )
