"""Domain name checks and derived resource names."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable

from ..errors import ValidationError

_DOMAIN_PATTERN = re.compile(
    r"^(?=.{1,253}$)(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,63}$"
)

# 自定义域名模板（按环境）
DOMAIN_TEMPLATES: Dict[str, str] = {
    "production": "{service}.{domain}",
    "staging": "{service}-staging.{domain}",
    "development": "{service}-dev.{domain}",
}


@dataclass
class DomainNames:
    """Names derived for one domain during INITIALIZATION."""
    domain: str
    clean_name: str
    worker_name: str
    database_name: str
    custom_url: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def is_valid_domain(domain: str) -> bool:
    return bool(domain) and bool(_DOMAIN_PATTERN.match(domain))


def validate_domain(domain: str, environment: str, environments: Iterable[str]) -> None:
    """Raise ``ValidationError`` when the domain or environment is unusable."""
    if not is_valid_domain(domain):
        raise ValidationError(f"Invalid domain format: {domain!r}", {"domain": domain})
    allowed = list(environments)
    if allowed and environment not in allowed:
        raise ValidationError(
            f"Unknown environment {environment!r}; expected one of: {', '.join(allowed)}",
            {"environment": environment},
        )


def clean_name(domain: str) -> str:
    """example.com -> example-com"""
    return re.sub(r"[^a-zA-Z0-9-]", "", domain.replace(".", "-")).lower()


def build_custom_url(service_name: str, domain: str, environment: str) -> str:
    template = DOMAIN_TEMPLATES.get(environment, "{service}-" + environment + ".{domain}")
    return "https://" + template.format(service=service_name, domain=domain)


def resolve_names(
    domain: str,
    environment: str,
    service_name: str = "data-service",
    name_template: str = "{clean_name}-{environment}-db",
) -> DomainNames:
    clean = clean_name(domain)
    return DomainNames(
        domain=domain,
        clean_name=clean,
        worker_name=f"{clean}-{service_name}",
        database_name=name_template.format(clean_name=clean, environment=environment, domain=domain),
        custom_url=build_custom_url(service_name, domain, environment),
    )
