"""
INTELLIGENCE EXTRACTOR - Deterministic lexical extraction of forensic identifiers

Stateless. Pulls identifiers and risk keywords out of adversary text:
- Phone numbers (10-digit Indian mobile scheme, optional +91 / 0 prefix)
- Payment handles (local-part@provider from a known provider allowlist)
- URLs and payment deeplinks (upi://pay, payto:)
- Account-like digit runs (11-18 digits, never a detected phone number)
- Employee / staff codes and case / ticket references
- Emails, organization names, suspicious keywords

Callers own merging the result into session state (see merge()).
"""

import re
from dataclasses import dataclass, fields
from typing import Dict, Iterable, List, Sequence

from .tagged_set import TaggedSet


# Persisted / reported key for every category, in report order
CATEGORY_KEYS = {
    "bank_accounts": "bankAccounts",
    "upi_ids": "upiIds",
    "phishing_links": "phishingLinks",
    "phone_numbers": "phoneNumbers",
    "emails": "emails",
    "employee_ids": "employeeIds",
    "case_ids": "caseIds",
    "org_names": "orgNames",
    "suspicious_keywords": "suspiciousKeywords",
}


@dataclass
class IntelligenceRecord:
    """Named sets of identifiers pulled from adversary messages."""
    bank_accounts: TaggedSet = None
    upi_ids: TaggedSet = None
    phishing_links: TaggedSet = None
    phone_numbers: TaggedSet = None
    emails: TaggedSet = None
    employee_ids: TaggedSet = None
    case_ids: TaggedSet = None
    org_names: TaggedSet = None
    suspicious_keywords: TaggedSet = None

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if not isinstance(value, TaggedSet):
                setattr(self, f.name, TaggedSet.from_persisted(f"intel.{CATEGORY_KEYS[f.name]}", value))

    def categories(self) -> Dict[str, TaggedSet]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def is_empty(self) -> bool:
        return not any(self.categories().values())

    def to_persisted(self) -> Dict[str, List[str]]:
        return {CATEGORY_KEYS[name]: values.to_persisted() for name, values in self.categories().items()}

    @classmethod
    def from_persisted(cls, raw) -> "IntelligenceRecord":
        raw = raw if isinstance(raw, dict) else {}
        return cls(**{
            attr: TaggedSet.from_persisted(f"intel.{key}", raw.get(key))
            for attr, key in CATEGORY_KEYS.items()
        })


# Known organization names scammers impersonate
KNOWN_ORGS = (
    "sbi", "hdfc", "icici", "axis", "kotak", "pnb", "bank of baroda", "canara",
    "rbi", "paytm", "phonepe", "gpay", "google pay", "amazon", "flipkart",
    "income tax", "customs", "fedex", "dhl", "bluedart", "trai", "uidai",
    "npci", "airtel", "jio", "vodafone",
)

SUSPICIOUS_KEYWORDS = (
    "urgent", "immediately", "verify", "verification", "otp", "blocked",
    "suspended", "account", "kyc", "penalty", "legal", "complaint", "refund",
    "reward", "prize", "lottery", "bank", "upi", "transfer", "payment",
    "police", "rbi", "customs", "parcel", "courier", "delivery", "tax", "fine",
    "link", "click", "password", "pin",
)

UPI_SUFFIXES = (
    "upi", "ybl", "okhdfcbank", "oksbi", "okicici", "okaxis", "okpaytm",
    "paytm", "ibl", "axl", "sbi", "hdfcbank", "icici", "kotak", "baroda",
    "upiicici",
)


def normalize_text(text: str) -> str:
    """Lower-case and fold punctuation to spaces, keeping identifier symbols."""
    if not text:
        return ""
    lowered = re.sub(r"\s+", " ", text.lower())
    folded = re.sub(r"[^a-z0-9@._+\-:/ ]", " ", lowered)
    return re.sub(r"\s+", " ", folded).strip()


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value)


class IntelligenceExtractor:
    """Regex-driven extractor; one shared instance is enough."""

    def __init__(self):
        self._init_patterns()
        self._init_keyword_patterns()

    def _init_patterns(self):
        self.patterns = {
            "phone": re.compile(r"(?<!\d)(?:\+91[\s-]?)?(?:0)?[6-9]\d{9}\b"),
            "upi": re.compile(
                r"\b[a-z0-9._-]{2,64}@(?:" + "|".join(UPI_SUFFIXES) + r")\b(?![.@-])"
            ),
            "email": re.compile(r"\b[a-z0-9._%+-]+@[a-z0-9-]+(?:\.[a-z0-9-]+)*\.[a-z]{2,}\b"),
            "url": re.compile(r"https?://[^\s/$.?#].[^\s]*"),
            "short_url": re.compile(r"\b(?:bit\.ly|tinyurl\.com|cutt\.ly|rb\.gy|t\.co|goo\.gl)/[\w\-]+"),
            "payment_link": re.compile(r"(?:upi://pay|payto:)\S*"),
            "bank_account": re.compile(r"\b\d{11,18}\b"),
            "employee_id": re.compile(
                r"\b(?:employee|emp|staff|officer)\s*(?:id|code|no|number)?\s*[:#-]?\s*([a-z0-9-]{3,12})\b"
            ),
            "case_id": re.compile(
                r"\b(?:case|ticket|reference|ref|complaint)\s*(?:id|no|number)?\s*[:#-]?\s*([a-z0-9-]{4,16})\b"
            ),
        }

    def _init_keyword_patterns(self):
        self.keyword_pattern = re.compile(r"\b(" + "|".join(SUSPICIOUS_KEYWORDS) + r")\b")
        self.org_pattern = re.compile(
            r"\b(" + "|".join(re.escape(org) for org in KNOWN_ORGS) + r")\b"
        )

    # ------------------------------------------------------------------
    # Category extractors (all take normalized text)
    # ------------------------------------------------------------------

    def _extract_phones(self, text: str) -> List[str]:
        return [m.group().strip() for m in self.patterns["phone"].finditer(text)]

    def _extract_upi_ids(self, text: str) -> List[str]:
        return [m.group() for m in self.patterns["upi"].finditer(text)]

    def _extract_emails(self, text: str, upi_ids: Sequence[str]) -> List[str]:
        return [m.group() for m in self.patterns["email"].finditer(text) if m.group() not in upi_ids]

    def _extract_links(self, text: str) -> List[str]:
        links = []
        for key in ("url", "short_url", "payment_link"):
            for match in self.patterns[key].finditer(text):
                link = re.sub(r"[),\].}]+$", "", match.group())
                if link and not any(link in existing for existing in links):
                    links.append(link)
        return links

    def _extract_bank_accounts(self, text: str, phones: Sequence[str]) -> List[str]:
        phone_digits = {_digits(p)[-10:] for p in phones}
        accounts = []
        for match in self.patterns["bank_account"].finditer(text):
            value = match.group()
            if value in phone_digits or (value[-10:] in phone_digits and len(value) <= 12):
                continue
            accounts.append(value)
        return accounts

    def _extract_coded(self, key: str, text: str) -> List[str]:
        # Codes must carry a digit, otherwise "employee id please" would match "please"
        return [m.group(1) for m in self.patterns[key].finditer(text) if re.search(r"\d", m.group(1))]

    def extract(self, texts: Iterable[str]) -> IntelligenceRecord:
        """Extract every category from a sequence of raw texts."""
        record = IntelligenceRecord()
        for raw in texts:
            text = normalize_text(raw)
            if not text:
                continue
            phones = self._extract_phones(text)
            upi_ids = self._extract_upi_ids(text)
            record.phone_numbers.update(phones)
            record.upi_ids.update(upi_ids)
            record.emails.update(self._extract_emails(text, upi_ids))
            record.phishing_links.update(self._extract_links(text))
            record.bank_accounts.update(self._extract_bank_accounts(text, phones))
            record.employee_ids.update(self._extract_coded("employee_id", text))
            record.case_ids.update(self._extract_coded("case_id", text))
            record.org_names.update(m.group(1) for m in self.org_pattern.finditer(text))
            record.suspicious_keywords.update(m.group(1) for m in self.keyword_pattern.finditer(text))
        return record


def merge(existing: IntelligenceRecord, incoming: IntelligenceRecord) -> IntelligenceRecord:
    """Per-category union. Commutative and idempotent; inputs are not mutated."""
    return IntelligenceRecord(**{
        name: values.union(getattr(incoming, name))
        for name, values in existing.categories().items()
    })


intelligence_extractor = IntelligenceExtractor()


def extract(texts: Iterable[str]) -> IntelligenceRecord:
    return intelligence_extractor.extract(texts)
