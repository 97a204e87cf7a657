"""Member identity resolution for vendor usage records."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.engine import Connection

from usagesync.db.schema import member_identities, members

MemberResolver = Callable[[str | None, str | None], str | None]


@dataclass(slots=True)
class MemberLookup:
    """Case-insensitive lookup of member ids by vendor email or username.

    Order: vendor identity by email, vendor identity by username, then the
    member's own email. Matching is plain string equality, so it can miss
    people whose vendor account uses a different address.
    """

    identity_emails: dict[str, str] = field(default_factory=dict)
    identity_usernames: dict[str, str] = field(default_factory=dict)
    member_emails: dict[str, str] = field(default_factory=dict)

    def resolve(self, email: str | None, username: str | None) -> str | None:
        email_key = _normalize(email)
        username_key = _normalize(username)
        if email_key and email_key in self.identity_emails:
            return self.identity_emails[email_key]
        if username_key and username_key in self.identity_usernames:
            return self.identity_usernames[username_key]
        if email_key:
            return self.member_emails.get(email_key)
        return None


def build_member_lookup(conn: Connection, tenant_id: str, vendor: str) -> MemberLookup:
    lookup = MemberLookup()
    identity_rows = conn.execute(
        select(
            member_identities.c.member_id,
            member_identities.c.vendor_email,
            member_identities.c.vendor_username,
        )
        .join(members, members.c.id == member_identities.c.member_id)
        .where(member_identities.c.vendor == vendor, members.c.tenant_id == tenant_id)
    )
    for member_id, vendor_email, vendor_username in identity_rows:
        email_key = _normalize(vendor_email)
        username_key = _normalize(vendor_username)
        if email_key:
            lookup.identity_emails[email_key] = member_id
        if username_key:
            lookup.identity_usernames[username_key] = member_id

    member_rows = conn.execute(select(members.c.id, members.c.email).where(members.c.tenant_id == tenant_id))
    for member_id, email in member_rows:
        email_key = _normalize(email)
        if email_key:
            lookup.member_emails[email_key] = member_id
    return lookup


def _normalize(value: str | None) -> str | None:
    if not value:
        return None
    return value.strip().lower() or None
