# app/core/normalizers.py

"""
Data normalization for extracted PIX receipts and bank statement lines.

Every raw field coming out of OCR / statement parsing goes through here.
Nothing downstream touches untyped data: a record either normalizes into a
typed model or is reported as a StructuralError.
"""

from dataclasses import dataclass, field as dataclass_field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Generic, Optional, TypeVar
import math
import re
import unicodedata

from app.config import CENTS
from app.errors import InvalidAmount, InvalidDate, InvalidDocument, StructuralError
from app.models import (
    ExtractedBankTransaction,
    ExtractedPixReceipt,
    NormalizedBankTransaction,
    NormalizedDate,
    NormalizedPixReceipt,
)

# Brasília time. Brazil has had no DST since 2019.
BRT = timezone(timedelta(hours=-3))

CPF_LENGTH = 11

# Timestamps above this are milliseconds
_MS_TIMESTAMP_CUTOFF = 100_000_000_000

_DATE_FORMATS = [
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
    "%d/%m/%y",
    "%d-%m-%Y %H:%M:%S",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%Y/%m/%d",
]

_CURRENCY_MARKERS = re.compile(r"r\$|brl|reais|real", re.IGNORECASE)
# Statement suffixes: C = credit, D = debit
_CREDIT_DEBIT_SUFFIX = re.compile(r"(?<![a-z])\s*([cd])$", re.IGNORECASE)
_AMOUNT_CHARS = re.compile(r"^[\s\d.,()+\-]+$")
# A CPF printed on a statement line, bare or formatted, not part of a longer number
_CPF_IN_TEXT = re.compile(r"(?<![\d./])(\d{3}\.\d{3}\.\d{3}-\d{2}|\d{11})(?![\d/]|[.\-]\d)")

# Connectives that carry no identity in Brazilian names
CONNECTIVES = frozenset({"de", "da", "do", "das", "dos", "e"})

# Bank statement boilerplate around the payer name
BANK_BOILERPLATE = frozenset({
    "pix", "recebido", "recebida", "receb", "rec", "rcbdo",
    "transf", "transferencia", "ted", "doc", "tev",
    "cred", "credito", "deposito", "dep",
    "pagamento", "pgto", "pag", "enviado", "recebimento",
    "qrcode", "qr", "code", "chave", "ag", "cc", "conta", "cp", "cpf", "cnpj",
    "via", "banco", "instituicao", "ref", "id", "e2e", "remetente", "origem",
})


def normalize_amount(amount: Any) -> Decimal:
    """
    Normalize an amount to a Decimal with 2 places (round half up).

    Handles:
    - ints, floats, Decimals
    - Brazilian strings: "R$ 1.234,56", "1234,56"
    - Dotted strings: "1234.56", "1,234.56"
    - Negatives: "-150,00", "150,00-", "(150,00)", "150,00 D"

    Raises InvalidAmount instead of defaulting to zero.
    """
    if amount is None:
        raise InvalidAmount("Amount is missing", field="amount")

    if isinstance(amount, bool):
        raise InvalidAmount(f"Amount is not a number: {amount!r}", field="amount", raw_value=amount)

    if isinstance(amount, int):
        return Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)

    if isinstance(amount, float):
        if not math.isfinite(amount):
            raise InvalidAmount(f"Amount is not finite: {amount!r}", field="amount", raw_value=amount)
        return Decimal(str(amount)).quantize(CENTS, rounding=ROUND_HALF_UP)

    if isinstance(amount, Decimal):
        if not amount.is_finite():
            raise InvalidAmount(f"Amount is not finite: {amount!r}", field="amount", raw_value=amount)
        return amount.quantize(CENTS, rounding=ROUND_HALF_UP)

    if isinstance(amount, str):
        return _parse_amount_string(amount)

    raise InvalidAmount(f"Unsupported amount type: {type(amount).__name__}", field="amount", raw_value=amount)


def _parse_amount_string(raw: str) -> Decimal:
    text = _CURRENCY_MARKERS.sub("", raw.strip())

    negative = False
    suffix = _CREDIT_DEBIT_SUFFIX.search(text)
    if suffix:
        negative = suffix.group(1).lower() == "d"
        text = text[:suffix.start()]

    text = text.strip()
    if not text or not _AMOUNT_CHARS.match(text) or not re.search(r"\d", text):
        raise InvalidAmount(f"Unparsable amount: {raw!r}", field="amount", raw_value=raw)

    if "-" in text or (text.startswith("(") and text.endswith(")")):
        negative = True
    digits = re.sub(r"[^\d.,]", "", text)

    last_dot = digits.rfind(".")
    last_comma = digits.rfind(",")

    if last_dot >= 0 and last_comma >= 0:
        # The separator that comes last is the decimal one
        if last_comma > last_dot:
            digits = digits.replace(".", "").replace(",", ".")
        else:
            digits = digits.replace(",", "")
    elif last_comma >= 0:
        if digits.count(",") > 1:
            digits = digits.replace(",", "")
        else:
            digits = digits.replace(",", ".")
    elif last_dot >= 0:
        # "1.234" and "1.234.567" are Brazilian thousands; "0.001" is not
        integer_part = digits[:last_dot].lstrip("0")
        if digits.count(".") > 1 or (integer_part and len(digits) - last_dot - 1 == 3):
            digits = digits.replace(".", "")

    if not re.fullmatch(r"\d+(\.\d+)?", digits):
        raise InvalidAmount(f"Unparsable amount: {raw!r}", field="amount", raw_value=raw)

    try:
        value = Decimal(digits)
    except InvalidOperation:
        raise InvalidAmount(f"Unparsable amount: {raw!r}", field="amount", raw_value=raw)

    if negative:
        value = -value
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def normalize_date(d: Any) -> NormalizedDate:
    """
    Normalize a date to day granularity, keeping the original timestamp.

    Handles:
    - date / datetime objects
    - ISO-8601 strings (with or without time / offset)
    - dd/MM/yyyy (optionally with HH:mm[:ss])
    - Unix timestamps in seconds or milliseconds

    Aware timestamps are converted to Brasília time and made naive.
    """
    if d is None:
        raise InvalidDate("Date is missing", field="transaction_date")

    if isinstance(d, bool):
        raise InvalidDate(f"Unsupported date: {d!r}", field="transaction_date", raw_value=d)

    if isinstance(d, datetime):
        return _from_datetime(d)

    if isinstance(d, date):
        return NormalizedDate(day=d, timestamp=datetime.combine(d, time.min))

    if isinstance(d, (int, float)):
        return _from_timestamp(d, raw=d)

    if isinstance(d, str):
        text = d.strip()
        if not text:
            raise InvalidDate("Date is empty", field="transaction_date", raw_value=d)

        if text.isdigit():
            if len(text) == 8:
                try:
                    return _from_datetime(datetime.strptime(text, "%Y%m%d"))
                except ValueError:
                    pass
            return _from_timestamp(int(text), raw=d)

        # ISO first
        try:
            return _from_datetime(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            pass

        for fmt in _DATE_FORMATS:
            try:
                return _from_datetime(datetime.strptime(text, fmt))
            except ValueError:
                continue

    raise InvalidDate(f"Unparsable date: {d!r}", field="transaction_date", raw_value=d)


def _from_datetime(value: datetime) -> NormalizedDate:
    if value.tzinfo is not None:
        value = value.astimezone(BRT).replace(tzinfo=None)
    return NormalizedDate(day=value.date(), timestamp=value)


def _from_timestamp(value: float, raw: Any) -> NormalizedDate:
    if isinstance(value, float) and not math.isfinite(value):
        raise InvalidDate(f"Unparsable date: {raw!r}", field="transaction_date", raw_value=raw)
    if value > _MS_TIMESTAMP_CUTOFF:
        value = value / 1000
    try:
        moment = datetime.fromtimestamp(value, tz=BRT)
    except (OverflowError, OSError, ValueError):
        raise InvalidDate(f"Timestamp out of range: {raw!r}", field="transaction_date", raw_value=raw)
    return _from_datetime(moment)


def normalize_document(document: Any) -> str:
    """
    Normalize a CPF to its 11 digits.

    Strips punctuation ("123.456.789-09" -> "12345678909").
    Raises InvalidDocument when the digit count is wrong.
    """
    if document is None or isinstance(document, bool):
        raise InvalidDocument("Document is missing", field="payer_document", raw_value=document)

    if isinstance(document, int):
        text = str(document).zfill(CPF_LENGTH)
    else:
        text = str(document)

    digits = re.sub(r"\D", "", text)
    if len(digits) != CPF_LENGTH:
        raise InvalidDocument(
            f"Document must have {CPF_LENGTH} digits, got {len(digits)}",
            field="payer_document",
            raw_value=document,
        )
    return digits


def is_masked_document(document: Any) -> bool:
    """PIX receipts usually print the payer CPF as ***.456.789-**."""
    return isinstance(document, str) and "*" in document


def normalize_name(name: str | None) -> list[str]:
    """
    Normalize a name for matching.

    - Strip accents
    - Lowercase
    - Remove punctuation
    - Collapse whitespace into a token list
    """
    if not name:
        return []

    decomposed = unicodedata.normalize("NFKD", name)
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    cleaned = re.sub(r"[^a-z0-9\s]", " ", stripped.lower())
    return cleaned.split()


def significant_tokens(tokens: list[str] | tuple[str, ...]) -> list[str]:
    """Drop connectives (de, da, dos...) from a name token list."""
    return [t for t in tokens if t not in CONNECTIVES]


def extract_name_fragment(description: str | None) -> list[str]:
    """
    Extract the name-like part of a bank statement description.

    "PIX RECEBIDO - JOAO DA SILVA CP:12345678" -> ["joao", "silva"]
    Generic descriptions ("PIX RECEBIDO") give an empty list.
    """
    fragment = []
    for token in normalize_name(description):
        if token in BANK_BOILERPLATE or token in CONNECTIVES:
            continue
        if len(token) < 2 or any(c.isdigit() for c in token):
            continue
        fragment.append(token)
    return fragment


def normalize_transaction_id(transaction_id: str | None) -> str:
    """Uppercase alphanumerics only, so IDs survive OCR spacing and dashes."""
    if not transaction_id:
        return ""
    return re.sub(r"[^A-Za-z0-9]", "", str(transaction_id)).upper()


def extract_documents(description: str | None) -> list[str]:
    """
    Standalone CPFs on a bank line.

    "PIX RECEBIDO 123.456.789-09" -> ["12345678909"]
    Agency, account and ID digits are never glued together into one.
    """
    if not description:
        return []
    return [re.sub(r"\D", "", m) for m in _CPF_IN_TEXT.findall(description)]


# ============================================
# Record normalization
# ============================================

T = TypeVar("T")


@dataclass(frozen=True)
class NormalizationResult(Generic[T]):
    """
    Tagged result of normalizing one record.

    `record` is None when the record must be excluded from matching.
    `errors` may be non-empty even for a usable record (e.g. bad CPF).
    """

    record: Optional[T]
    errors: tuple[StructuralError, ...] = dataclass_field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.record is not None


def normalize_pix_receipt(raw: ExtractedPixReceipt) -> NormalizationResult[NormalizedPixReceipt]:
    """Normalize an extracted PIX receipt. Unparsable amount or date excludes it."""
    errors: list[StructuralError] = []

    amount = _collect(normalize_amount, raw.amount, errors, raw.id)
    if amount is not None and amount <= 0:
        errors.append(InvalidAmount(
            f"PIX amount must be positive, got {amount}",
            field="amount",
            raw_value=raw.amount,
            record_id=raw.id,
        ))
        amount = None

    transaction_date = _collect(normalize_date, raw.transaction_date, errors, raw.id)

    # A bad CPF is reported but never excludes: only amount and date take a record out of matching
    document = None
    if raw.payer_document is not None and not is_masked_document(raw.payer_document):
        document = _collect(normalize_document, raw.payer_document, errors, raw.id)

    if amount is None or transaction_date is None:
        return NormalizationResult(record=None, errors=tuple(errors))

    tokens = normalize_name(raw.payer_name)
    record = NormalizedPixReceipt(
        id=raw.id,
        version=raw.version,
        amount=amount,
        transaction_date=transaction_date,
        payer_name=" ".join(tokens),
        payer_tokens=tuple(tokens),
        payer_document=document,
        transaction_id=normalize_transaction_id(raw.transaction_id),
        bank_name=raw.bank_name,
        extraction_confidence=raw.extraction_confidence,
    )
    return NormalizationResult(record=record, errors=tuple(errors))


def normalize_bank_transaction(
    raw: ExtractedBankTransaction,
) -> NormalizationResult[NormalizedBankTransaction]:
    """Normalize a bank statement line. Unparsable amount or date excludes it."""
    errors: list[StructuralError] = []

    amount = _collect(normalize_amount, raw.amount, errors, raw.id)
    transaction_date = _collect(normalize_date, raw.transaction_date, errors, raw.id)

    # Same CPF policy as receipts
    document = None
    if raw.payer_document is not None and not is_masked_document(raw.payer_document):
        document = _collect(normalize_document, raw.payer_document, errors, raw.id)

    if amount is None or transaction_date is None:
        return NormalizationResult(record=None, errors=tuple(errors))

    description = raw.description or ""
    # Parsers that split the payer out of the description win over the fragment
    name_tokens = significant_tokens(normalize_name(raw.payer_name)) if raw.payer_name else []
    if not name_tokens:
        name_tokens = extract_name_fragment(description)

    record = NormalizedBankTransaction(
        id=raw.id,
        version=raw.version,
        amount=amount,
        transaction_date=transaction_date,
        description=description,
        name_tokens=tuple(name_tokens),
        description_key=normalize_transaction_id(description),
        description_tokens=tuple(t for t in (normalize_transaction_id(w) for w in description.split()) if t),
        description_documents=tuple(extract_documents(description)),
        transaction_id=normalize_transaction_id(raw.transaction_id),
        payer_document=document,
        bank_name=raw.bank_name,
    )
    return NormalizationResult(record=record, errors=tuple(errors))


def _collect(func, value, errors: list[StructuralError], record_id: str):
    """Run a field normalizer, collecting its StructuralError instead of raising."""
    try:
        return func(value)
    except StructuralError as e:
        e.record_id = record_id
        errors.append(e)
        return None
