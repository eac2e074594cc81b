"""Minimal XMPP address (JID) parsing.

Only the splitting rules of RFC 7622 are applied; no stringprep or PRECIS
profiles are enforced. That is sufficient to hand the parts to ``prosodyctl``,
which performs its own normalisation.
"""
from __future__ import annotations

from dataclasses import dataclass

MAX_PART_BYTES = 1023


class JIDError(ValueError):
    """Raised when an address cannot be parsed as a JID."""


@dataclass(frozen=True, slots=True)
class JID:
    """An XMPP address split into its three parts."""

    localpart: str
    domainpart: str
    resourcepart: str = ""

    @classmethod
    def parse(cls, address: str) -> JID:
        """Split *address* of the form ``[local@]domain[/resource]``."""
        remainder, slash, resource = address.partition("/")
        if slash and not resource:
            raise JIDError(f"Resourcepart must not be empty in {address!r}.")

        local, at, domain = remainder.partition("@")
        if not at:
            local, domain = "", remainder
        elif not local:
            raise JIDError(f"Localpart must not be empty in {address!r}.")

        # A single trailing dot on the domain is permitted and ignored.
        if domain.endswith(".") and len(domain) > 1:
            domain = domain[:-1]
        if not domain:
            raise JIDError(f"Domainpart must not be empty in {address!r}.")

        parts = (("Localpart", local), ("Domainpart", domain), ("Resourcepart", resource))
        for label, part in parts:
            if len(part.encode("utf-8")) > MAX_PART_BYTES:
                raise JIDError(f"{label} exceeds {MAX_PART_BYTES} bytes in {address!r}.")
        return cls(localpart=local, domainpart=domain.lower(), resourcepart=resource)

    def bare(self) -> JID:
        """Return the JID without its resourcepart."""
        return JID(localpart=self.localpart, domainpart=self.domainpart)

    def __str__(self) -> str:
        text = self.domainpart
        if self.localpart:
            text = f"{self.localpart}@{text}"
        if self.resourcepart:
            text = f"{text}/{self.resourcepart}"
        return text


__all__ = ["JID", "JIDError"]
