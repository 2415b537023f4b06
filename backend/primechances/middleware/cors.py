from __future__ import annotations


def build_allowed_origins(*, frontend_base_url: str, frontend_urls: str | None) -> list[str]:
    allowed: set[str] = {
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8080",
        "https://primechances.com",
        "https://www.primechances.com",
    }

    if frontend_base_url:
        allowed.add(frontend_base_url.rstrip("/"))

    for origin in [s.strip() for s in str(frontend_urls or "").split(",") if s.strip()]:
        allowed.add(origin.rstrip("/"))

    return sorted(allowed)


def build_allowed_origin_regex() -> str:
    """
    Preview deployments: *.primechances.com and *.vercel.app.

    Anchored on the registrable domain, so "evilprimechances.com" does not match.
    """
    return r"^https?://([a-z0-9-]+\.)*(primechances\.com|vercel\.app)(:\d+)?$"
