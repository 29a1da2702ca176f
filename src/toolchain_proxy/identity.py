from __future__ import annotations

from dataclasses import dataclass

from toolchain_proxy.errors import UnknownDistributionError


@dataclass(frozen=True)
class ContainerIdentity:
    uid: int
    gid: int
    username: str


DISTRIBUTION_IDENTITIES: dict[str, ContainerIdentity] = {
    "link-motion-autoos": ContainerIdentity(uid=20000, gid=1002, username="org.c4c.ui_cluster"),
    "link-motion-ivios": ContainerIdentity(uid=20000, gid=1002, username="system"),
}


def resolve_identity(distribution: str) -> ContainerIdentity:
    normalized = str(distribution or "").strip()
    identity = DISTRIBUTION_IDENTITIES.get(normalized)
    if identity is None:
        raise UnknownDistributionError(f"Unknown distribution: {normalized or '<empty>'}")
    return identity
