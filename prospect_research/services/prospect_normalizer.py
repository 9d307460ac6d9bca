"""
Normalization, validation and quality scoring of uploaded prospect rows.

Rows arrive as loosely keyed mappings (spreadsheet headers like "Donor Name"
or "Zip Code"). They are mapped onto ProspectInput fields, deduplicated by
name/city/state, validated, and scored for how much address context the
research will have to work with.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from prospect_research.schemas.batch import ProspectInput, RowIssue

_SEP = r"[_\s-]?"

# Checked pattern-first across all headers, so exact names win over fallbacks.
COLUMN_NAME_PATTERNS: Dict[str, List[re.Pattern]] = {
    "name": [
        re.compile(p, re.I)
        for p in (
            r"^name$",
            rf"^full{_SEP}name$",
            rf"^prospect{_SEP}name$",
            rf"^donor{_SEP}name$",
            rf"^contact{_SEP}name$",
            rf"^first{_SEP}name$",
            r"^(person|individual|contact|donor|constituent|owner|resident|client|customer|lead)$",
            rf"^owner{_SEP}name$",
        )
    ],
    "address": [
        re.compile(p, re.I)
        for p in (
            r"^address$",
            rf"^street{_SEP}address$",
            rf"^address{_SEP}1$",
            r"^street$",
            rf"^home{_SEP}address$",
            r"^residence$",
            r"^location$",
            rf"^mailing{_SEP}address$",
            rf"^property{_SEP}address$",
        )
    ],
    "city": [re.compile(r"^(city|town|municipality|locality)$", re.I)],
    "state": [re.compile(r"^(state|province|st|region)$", re.I)],
    "zip": [re.compile(rf"^(zip|zip{_SEP}code|postal{_SEP}code|postcode|postal)$", re.I)],
    "full_address": [re.compile(rf"^(full|complete){_SEP}address$", re.I)],
    "email": [re.compile(rf"^(email|e{_SEP}mail|email{_SEP}address)$", re.I)],
    "phone": [re.compile(rf"^(phone|telephone|mobile|cell|phone{_SEP}number)$", re.I)],
    "employer": [re.compile(r"^(company|organization|employer|business|org)$", re.I)],
    "title": [re.compile(rf"^(title|job{_SEP}title|position|role)$", re.I)],
    "notes": [re.compile(rf"^(notes|comments|remarks|additional{_SEP}info)$", re.I)],
}

# Last resort for headers such as "Donor Full Name" or "Mailing Address Line".
FALLBACK_PATTERNS: Dict[str, re.Pattern] = {
    "name": re.compile(r"name", re.I),
    "address": re.compile(r"address", re.I),
}

_LAST_NAME_RE = re.compile(rf"^last{_SEP}name$|^surname$", re.I)
_FIRST_NAME_RE = re.compile(rf"^first{_SEP}name$", re.I)

COMMON_NAMES = frozenset({"john smith", "michael johnson", "david williams", "james brown"})

QUALITY_HIGH = "HIGH"
QUALITY_MEDIUM = "MEDIUM"
QUALITY_LOW = "LOW"
QUALITY_INSUFFICIENT = "INSUFFICIENT"


def normalize_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def detect_column_mapping(headers: Sequence[str]) -> Dict[str, Optional[str]]:
    """Map each ProspectInput field to the first matching header (or None)."""
    mapping: Dict[str, Optional[str]] = {}
    used: set[str] = set()
    for field_name, patterns in COLUMN_NAME_PATTERNS.items():
        mapping[field_name] = None
        for pattern in patterns:
            match = next((h for h in headers if h not in used and pattern.match(h.strip())), None)
            if match is not None:
                mapping[field_name] = match
                used.add(match)
                break
    for field_name, pattern in FALLBACK_PATTERNS.items():
        if mapping[field_name] is None:
            mapping[field_name] = next(
                (h for h in headers if h not in used and pattern.search(h) and not _LAST_NAME_RE.match(h.strip())),
                None,
            )
            if mapping[field_name]:
                used.add(mapping[field_name])
    return mapping


def _join_address_parts(*parts: Optional[str]) -> Optional[str]:
    return ", ".join(p for p in parts if p) or None


def normalize_row(row: Mapping[str, Any]) -> ProspectInput:
    """Map a raw row onto ProspectInput; builds full_address from its parts when missing."""
    headers = [str(key) for key in row.keys()]
    mapping = detect_column_mapping(headers)
    values = {name: normalize_string(row.get(header)) if header else None for name, header in mapping.items()}

    name = values["name"] or ""
    name_header = mapping["name"]
    if name_header and _FIRST_NAME_RE.match(name_header.strip()):
        last_header = next((h for h in headers if _LAST_NAME_RE.match(h.strip())), None)
        last = normalize_string(row.get(last_header)) if last_header else None
        if last:
            name = f"{name} {last}".strip()

    full_address = values["full_address"] or _join_address_parts(
        values["address"], values["city"], values["state"], values["zip"]
    )

    mapped_headers = {header for header in mapping.values() if header}
    extra = {
        str(key): normalize_string(value)
        for key, value in row.items()
        if key not in mapped_headers and normalize_string(value) is not None and not _LAST_NAME_RE.match(str(key).strip())
    }

    return ProspectInput(
        name=name,
        address=values["address"],
        city=values["city"],
        state=values["state"],
        zip=values["zip"],
        full_address=full_address,
        employer=values["employer"],
        title=values["title"],
        email=values["email"],
        phone=values["phone"],
        notes=values["notes"],
        extra=extra,
    )


def prospect_identity(prospect: ProspectInput) -> str:
    """Duplicate key: name + city + state, case and whitespace insensitive."""
    key = "|".join((normalize_string(v) or "").lower() for v in (prospect.name, prospect.city, prospect.state))
    return re.sub(r"\s+", " ", key).strip()


def validate_prospect(prospect: ProspectInput) -> List[str]:
    errors = []
    if not normalize_string(prospect.name):
        errors.append("Name is required")
    # Only a caller-supplied full_address counts on its own
    constructed = _join_address_parts(prospect.address, prospect.city, prospect.state, prospect.zip)
    given_full_address = normalize_string(prospect.full_address)
    has_location = (
        normalize_string(prospect.address)
        or (given_full_address and given_full_address != constructed)
        or (normalize_string(prospect.city) and normalize_string(prospect.state))
    )
    if not has_location:
        errors.append("Address information is required (address, city/state, or full_address)")
    return errors


@dataclass
class AddressQuality:
    quality: str
    score: int
    max_score: int = 10
    missing: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def score_address_quality(prospect: ProspectInput) -> AddressQuality:
    score = 0
    missing: List[str] = []
    warnings: List[str] = []

    name = normalize_string(prospect.name)
    if name:
        score += 3
        if name.lower() in COMMON_NAMES:
            warnings.append("Common name may result in less accurate research")
    else:
        missing.append("name")

    if normalize_string(prospect.address):
        score += 2
    elif not normalize_string(prospect.full_address):
        missing.append("street address")

    for attr, points in (("city", 2), ("state", 2)):
        if normalize_string(getattr(prospect, attr)):
            score += points
        else:
            missing.append(attr)

    if normalize_string(prospect.zip):
        score += 1

    if score >= 8:
        quality = QUALITY_HIGH
    elif score >= 5:
        quality = QUALITY_MEDIUM
    elif score >= 3:
        quality = QUALITY_LOW
        warnings.append("Limited address data may result in incomplete research")
    else:
        quality = QUALITY_INSUFFICIENT
        warnings.append("Insufficient data for reliable research")

    return AddressQuality(quality=quality, score=score, missing=missing, warnings=warnings)


@dataclass
class PreparedProspects:
    prospects: List[ProspectInput]
    total_rows: int
    duplicates_removed: int = 0
    invalid_rows: List[RowIssue] = field(default_factory=list)
    low_quality: List[RowIssue] = field(default_factory=list)


def prepare_prospects(rows: Sequence[Any]) -> PreparedProspects:
    """Normalize, dedupe (first occurrence wins) and validate rows. Row numbers are 1-based."""
    report = PreparedProspects(prospects=[], total_rows=len(rows))
    seen: set[str] = set()
    for row_number, row in enumerate(rows, start=1):
        if not isinstance(row, Mapping):
            report.invalid_rows.append(RowIssue(row=row_number, messages=["Row must be an object of column values"]))
            continue
        prospect = normalize_row(row)

        identity = prospect_identity(prospect)
        if identity in seen:
            report.duplicates_removed += 1
            continue
        seen.add(identity)

        errors = validate_prospect(prospect)
        if errors:
            report.invalid_rows.append(RowIssue(row=row_number, messages=errors))
            continue

        quality = score_address_quality(prospect)
        if quality.warnings:
            report.low_quality.append(RowIssue(row=row_number, messages=quality.warnings))
        report.prospects.append(prospect)
    return report
