import logging
import time
from typing import Dict, Optional

from sqlalchemy.orm import Session

from config import Settings
from models import Member, MemberType
from normalize import normalize_name

logger = logging.getLogger(__name__)


class MembershipResolver:
    """
    In-memory view of the member directory, keyed by normalized name.

    The directory is read on first use and again once ``ttl`` seconds have
    passed (never, if ttl is 0). Anything that writes to the members table
    must call ``refresh`` afterwards.
    """

    def __init__(self, settings: Settings, clock=time.monotonic):
        self.settings = settings
        self.ttl = settings.member_cache_ttl
        self._clock = clock
        self._members: Optional[Dict[str, MemberType]] = None
        self._loaded_at = 0.0

    @property
    def is_stale(self) -> bool:
        if self._members is None:
            return True
        return bool(self.ttl) and self._clock() - self._loaded_at >= self.ttl

    def refresh(self, db: Session) -> int:
        members = {}
        for name_key, member_type in db.query(Member.name_key, Member.type).all():
            members[normalize_name(name_key)] = MemberType(member_type)
        self._members = members
        self._loaded_at = self._clock()
        logger.info("Loaded %d members into the directory cache", len(members))
        return len(members)

    def invalidate(self):
        self._members = None

    def resolve(self, db: Session, name: str) -> Optional[MemberType]:
        """Membership type for a display name, or None when there is no match"""
        if self.is_stale:
            self.refresh(db)
        return self._members.get(normalize_name(name))

    def limit_for(self, member_type: Optional[MemberType]) -> int:
        if member_type is None:
            return 0
        return self.settings.member_limit(member_type)


def upsert_members(db: Session, entries, resolver: MembershipResolver) -> int:
    """Add or update (name, type) pairs in the directory, then refresh the cache"""
    wanted = {}
    for name, member_type in entries:
        key = normalize_name(name)
        if key:
            wanted[key] = MemberType(member_type)

    for key, member_type in wanted.items():
        member = db.query(Member).filter(Member.name_key == key).first()
        if member is None:
            db.add(Member(name_key=key, type=member_type))
        else:
            member.type = member_type
    db.commit()
    resolver.refresh(db)
    return len(wanted)


_resolver: Optional[MembershipResolver] = None


def get_membership_resolver() -> MembershipResolver:
    """Dependency for FastAPI routes to get the process-wide resolver"""
    global _resolver
    if _resolver is None:
        from config import get_settings

        _resolver = MembershipResolver(get_settings())
    return _resolver
