import re

# scanners and phone keyboards sometimes hand us non-latin digits
PERSIAN_DIGITS = '۰۱۲۳۴۵۶۷۸۹'
ARABIC_INDIC_DIGITS = '٠١٢٣٤٥٦٧٨٩'

DASHES = {
    '\u2010': '-',
    '\u2011': '-',
    '\u2012': '-',
    '\u2013': '-',
    '\u2014': '-',
    '\u2212': '-',
}


def digits_to_latin(s: str) -> str:
    out = []
    for ch in s:
        if ch in PERSIAN_DIGITS:
            out.append(str(PERSIAN_DIGITS.index(ch)))
        elif ch in ARABIC_INDIC_DIGITS:
            out.append(str(ARABIC_INDIC_DIGITS.index(ch)))
        else:
            out.append(ch)
    return ''.join(out)


def replace_dashes(s: str) -> str:
    return ''.join(DASHES.get(c, c) for c in s)


def remove_invisible(s: str) -> str:
    return re.sub(r'[\u200b\u200c\u200d\u00AD\ufeff]', '', s)


def normalize_code(s: str) -> str:
    """Canonical form of a typed or scanned serial/batch code: latin digits,
    ascii dashes, no whitespace, upper case."""
    if s is None:
        return ''
    s2 = digits_to_latin(s)
    s2 = replace_dashes(s2)
    s2 = remove_invisible(s2)
    s2 = re.sub(r'\s+', '', s2)
    return s2.upper()


def normalize_scanned_text(s: str) -> str:
    """Like normalize_code but keeps the hash part after '#' in lower case,
    since authentication hashes are lower-case hex."""
    if s is None:
        return ''
    if '#' not in s:
        return normalize_code(s)
    serial, _, tail = s.partition('#')
    tail = re.sub(r'\s+', '', remove_invisible(digits_to_latin(tail)))
    return normalize_code(serial) + '#' + tail.lower()
