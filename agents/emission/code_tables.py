"""Static code tables for the Factus wire schema.

Every lookup is total: unknown, empty or ``None`` input resolves to the
table's default and never raises. String keys are matched case-insensitively
after trimming and stripping accents, so ``"Anulación"`` and ``"anulacion"``
resolve to the same code.
"""

from __future__ import annotations

import unicodedata
from typing import Dict, Optional, Union

DEFAULT_CORRECTION_CONCEPT = 2  # annulment
DEFAULT_LEGAL_ORGANIZATION = "2"  # natural person
DEFAULT_TAX_REGIME = "21"  # not responsible for IVA
DEFAULT_IDENTIFICATION_DOCUMENT = "3"  # cedula de ciudadania
DEFAULT_PAYMENT_FORM = "1"  # cash
DEFAULT_PAYMENT_METHOD = "10"  # efectivo
DEFAULT_OPERATION_TYPE = 10  # standard sale
DEFAULT_UNIT_MEASURE = 70  # unit
DEFAULT_MUNICIPALITY_ID = "149"  # Bogota D.C.
DEFAULT_DANE_CODE = "11001"

CUSTOMIZATION_WITH_REFERENCE = 20
CUSTOMIZATION_WITHOUT_REFERENCE = 22

CORRECTION_CONCEPTS: Dict[str, int] = {
    "devolucion": 1,
    "devolucion_parcial": 1,
    "anulacion": 2,
    "anulacion_factura": 2,
    "rebaja": 3,
    "descuento": 3,
    "descuento_parcial": 3,
    "descuento_total": 3,
    "ajuste_precio": 4,
    "ajuste": 4,
    "otros": 5,
    "otro": 5,
}

IDENTIFICATION_DOCUMENTS: Dict[str, str] = {
    "RC": "1",
    "TI": "2",
    "CC": "3",
    "PP": "4",
    "CE": "5",
    "NIT": "6",
    "PEP": "7",
    "DIE": "8",
}

TAX_REGIMES: Dict[str, str] = {
    "responsable iva": "1",
    "no responsable iva": "21",
    "regimen simple": "3",
}

PAYMENT_FORMS: Dict[str, str] = {
    "contado": "1",
    "efectivo": "1",
    "tarjeta": "1",
    "transferencia": "1",
    "credito": "2",
}

PAYMENT_METHODS: Dict[str, str] = {
    "efectivo": "10",
    "credito": "1",
    "tarjeta": "48",
    "transferencia": "42",
    "cheque": "20",
}

OPERATION_TYPES: Dict[str, int] = {
    "venta": 10,
    "contado": 10,
    "credito": 10,
    "exportacion": 20,
}

UNIT_MEASURES: Dict[str, int] = {
    "UND": 70,
    "KG": 28,
    "LB": 14,
    "MT": 59,
    "M2": 26,
    "M3": 11,
    "LT": 94,
    "GL": 21,
    "HR": 57,
    "DIA": 404,
}

# DANE municipality code -> Factus internal municipality id
MUNICIPALITIES: Dict[str, str] = {
    "11001": "149",  # Bogota D.C.
    "05001": "19",  # Medellin
    "76001": "1096",  # Cali
    "08001": "78",  # Barranquilla
    "13001": "150",  # Cartagena
    "54001": "223",  # Cucuta
    "68001": "689",  # Bucaramanga
    "66001": "624",  # Pereira
    "47001": "520",  # Santa Marta
    "73001": "838",  # Ibague
    "52001": "207",  # Pasto
    "17001": "483",  # Manizales
    "50001": "568",  # Villavicencio
    "20001": "1095",  # Valledupar
    "15001": "175",  # Tunja
    "41001": "268",  # Neiva
    "63001": "698",  # Armenia
    "19001": "643",  # Popayan
    "23001": "602",  # Monteria
    "70001": "993",  # Sincelejo
    "44001": "441",  # Riohacha
    "68679": "980",  # San Gil
}


def normalize_key(value: object) -> str:
    """Lower-case, trim and strip accents from a lookup key."""
    if value is None:
        return ""
    text = unicodedata.normalize("NFKD", str(value).strip().lower())
    return "".join(ch for ch in text if not unicodedata.combining(ch))


def correction_concept_code(value: Union[int, str, None]) -> int:
    """Resolve a correction concept (1..5) from a code or a synonym."""
    if isinstance(value, bool):
        return DEFAULT_CORRECTION_CONCEPT
    if isinstance(value, int):
        return value if 1 <= value <= 5 else DEFAULT_CORRECTION_CONCEPT
    key = normalize_key(value)
    if key.isdigit():
        number = int(key)
        return number if 1 <= number <= 5 else DEFAULT_CORRECTION_CONCEPT
    return CORRECTION_CONCEPTS.get(key, DEFAULT_CORRECTION_CONCEPT)


def legal_organization_code(person_type: Optional[str]) -> str:
    return "1" if normalize_key(person_type) == "juridica" else DEFAULT_LEGAL_ORGANIZATION


def tax_regime_code(regime: Optional[str]) -> str:
    return TAX_REGIMES.get(normalize_key(regime), DEFAULT_TAX_REGIME)


def identification_document_code(document_type: Optional[str]) -> str:
    key = normalize_key(document_type).upper()
    return IDENTIFICATION_DOCUMENTS.get(key, DEFAULT_IDENTIFICATION_DOCUMENT)


def payment_form_code(payment_form: Optional[str]) -> str:
    return PAYMENT_FORMS.get(normalize_key(payment_form), DEFAULT_PAYMENT_FORM)


def payment_method_code(payment_method: Optional[str]) -> str:
    return PAYMENT_METHODS.get(normalize_key(payment_method), DEFAULT_PAYMENT_METHOD)


def operation_type_code(operation_type: Optional[str]) -> int:
    return OPERATION_TYPES.get(normalize_key(operation_type), DEFAULT_OPERATION_TYPE)


def unit_measure_code(unit: Optional[str]) -> int:
    return UNIT_MEASURES.get(normalize_key(unit).upper(), DEFAULT_UNIT_MEASURE)


def municipality_id(dane_code: Optional[str]) -> str:
    """Translate a DANE municipality code into the Factus municipality id."""
    code = str(dane_code).strip() if dane_code else DEFAULT_DANE_CODE
    return MUNICIPALITIES.get(code, DEFAULT_MUNICIPALITY_ID)
