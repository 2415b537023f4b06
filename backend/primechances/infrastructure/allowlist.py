from __future__ import annotations


def parse_csv(raw: str | None) -> list[str]:
    """
    Parse a comma-separated list into trimmed non-empty strings.
    """
    s = str(raw or "").strip()
    if not s:
        return []
    out: list[str] = []
    for part in s.split(","):
        p = str(part or "").strip()
        if p and p not in out:
            out.append(p)
    return out


def normalize_email(value: str | None) -> str:
    return str(value or "").strip().lower()


def is_allowed_email(email: str | None, allowed: list[str] | tuple[str, ...]) -> bool:
    """
    Exact, case-insensitive e-mail allow-list check. An empty list allows nobody.
    """
    em = normalize_email(email)
    if not em or "@" not in em:
        return False
    return em in {normalize_email(a) for a in (allowed or ()) if a}
