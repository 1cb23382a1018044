"""
从 OCR 文本里尽力抽取 name / dosage / quantity。

纯正则，不做任何猜测性的纠错；哪个字段找不到就留 None，
缺字段不是错误，由患者核对、药剂师审核兜底。
"""

import re

from ..types import PartialMedicationDetails

DOSAGE_RE = re.compile(r'(\d+(?:\.\d+)?)\s*(mcg|mg|ml|g|iu|units?)\b', re.IGNORECASE)

# qty: 30 / quantity 30 / disp #30 / #30
QUANTITY_LABEL_RE = re.compile(r'(?:\bqty|\bquantity|\bdisp(?:ense)?|#)\s*[:=#]?\s*(\d+)\b', re.IGNORECASE)
# 30 tablets / 14 caps
QUANTITY_COUNT_RE = re.compile(r'\b(\d+)\s*(?:tablets?|tabs?|capsules?|caps?|pills?)\b', re.IGNORECASE)

RX_PREFIX_RE = re.compile(r'^\s*(?:rx|℞)\s*[:.\-]?\s*', re.IGNORECASE)
LIST_NUMBER_RE = re.compile(r'^\s*\d+\s*[.)]\s*')
TRAILING_JUNK_RE = re.compile(r'[\s:,;\-]+$')


def _clean_name(raw):
    name = RX_PREFIX_RE.sub('', raw)
    name = LIST_NUMBER_RE.sub('', name)
    name = TRAILING_JUNK_RE.sub('', name).strip()
    if not name or not re.search(r'[A-Za-z]', name):
        return None
    return name[:100]


def _extract_dosage_and_name(lines):
    for line in lines:
        match = DOSAGE_RE.search(line)
        if match:
            dosage = f"{match.group(1)}{match.group(2).lower()}"
            return dosage, _clean_name(line[:match.start()])
    return None, None


def _extract_name_from_rx_line(lines):
    for line in lines:
        if RX_PREFIX_RE.match(line):
            head = re.split(r'\d', RX_PREFIX_RE.sub('', line), maxsplit=1)[0]
            return _clean_name(head)
    return None


def _extract_quantity(text):
    for pattern in (QUANTITY_LABEL_RE, QUANTITY_COUNT_RE):
        for match in pattern.finditer(text):
            value = int(match.group(1))
            if value > 0:
                return value
    return None


def extract_medication_details(text: str) -> PartialMedicationDetails:
    """
    >>> extract_medication_details("Rx: Amoxicillin 500mg\\nQty: 30").to_dict()
    {'name': 'Amoxicillin', 'dosage': '500mg', 'quantity': 30}
    """
    lines = [line for line in (text or '').splitlines() if line.strip()]
    dosage, name = _extract_dosage_and_name(lines)
    if name is None:
        name = _extract_name_from_rx_line(lines)

    return PartialMedicationDetails(
        name=name,
        dosage=dosage,
        quantity=_extract_quantity(text or ''),
    )
