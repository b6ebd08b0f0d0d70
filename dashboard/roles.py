"""Email based role resolution for edge-asserted identities."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Sequence, Tuple

from .models import Role

DEFAULT_EXACT_ROLES: Dict[str, Role] = {
    "admin@bvg.com": Role.ADMIN,
    "ops@bvg.com": Role.OPS,
}
DEFAULT_ADMIN_DOMAINS: Tuple[str, ...] = ("bvg.com", "aiautomate.es")
DEFAULT_OPS_PREFIXES: Tuple[str, ...] = ("ops", "operador")


def _normalise_domain(value: str) -> str:
    domain = value.strip().lower().lstrip("@")
    if not domain:
        raise ValueError("Admin domain patterns must not be empty")
    return domain


def _normalise_prefix(value: str) -> str:
    prefix = value.strip().lower().rstrip("@")
    if not prefix:
        raise ValueError("Ops prefix patterns must not be empty")
    return prefix


def _split_email(email: str) -> Tuple[str, str]:
    local, _, domain = email.strip().lower().rpartition("@")
    if not local:
        return domain, ""
    return local, domain


@dataclass(frozen=True)
class RoleRules:
    """Ordered role rules: exact table, admin domains, ops prefixes, default."""

    exact: Mapping[str, Role] = field(default_factory=lambda: dict(DEFAULT_EXACT_ROLES))
    admin_domains: Tuple[str, ...] = DEFAULT_ADMIN_DOMAINS
    ops_prefixes: Tuple[str, ...] = DEFAULT_OPS_PREFIXES
    default: Role = Role.READ

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "RoleRules":
        """Create rules from the ``roles`` section of the auth config file."""

        exact_raw = data.get("exact")
        if exact_raw is None:
            exact = dict(DEFAULT_EXACT_ROLES)
        elif isinstance(exact_raw, Mapping):
            exact = {str(email).strip().lower(): Role(str(role)) for email, role in exact_raw.items()}
        else:
            raise ValueError("roles.exact must be a mapping of email to role")

        admin_raw = data.get("admin_patterns")
        ops_raw = data.get("ops_patterns")
        for name, value in (("admin_patterns", admin_raw), ("ops_patterns", ops_raw)):
            if value is not None and (isinstance(value, str) or not isinstance(value, Sequence)):
                raise ValueError(f"roles.{name} must be a list")

        admin_domains = (
            tuple(_normalise_domain(str(item)) for item in admin_raw)
            if admin_raw is not None
            else DEFAULT_ADMIN_DOMAINS
        )
        ops_prefixes = (
            tuple(_normalise_prefix(str(item)) for item in ops_raw)
            if ops_raw is not None
            else DEFAULT_OPS_PREFIXES
        )
        default = Role(str(data.get("default", Role.READ.value)))
        return RoleRules(exact=exact, admin_domains=admin_domains, ops_prefixes=ops_prefixes, default=default)

    def resolve(self, email: str) -> Role:
        """Return the role for ``email``; the first matching rule wins."""

        lowered = email.strip().lower()
        exact = self.exact.get(lowered)
        if exact is not None:
            return exact

        local, domain = _split_email(lowered)
        for admin_domain in self.admin_domains:
            if domain == admin_domain:
                return Role.ADMIN

        for prefix in self.ops_prefixes:
            if local.startswith(prefix):
                return Role.OPS

        return self.default


DEFAULT_RULES = RoleRules()


def resolve_role(email: str, rules: RoleRules = DEFAULT_RULES) -> Role:
    return rules.resolve(email)


__all__ = ["DEFAULT_RULES", "RoleRules", "resolve_role"]
