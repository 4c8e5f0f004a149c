from membership import MembershipResolver, upsert_members
from models import Member, MemberType


def test_resolve_is_accent_and_case_insensitive(db, add_member, resolver):
    add_member("orjan astrom", "family")
    assert resolver.resolve(db, "Örjan  Åström") == MemberType.FAMILY


def test_unknown_name_is_not_an_error(db, resolver):
    assert resolver.resolve(db, "Nobody Here") is None


def test_cache_needs_refresh_after_writes(db, resolver):
    assert resolver.resolve(db, "Lena Berg") is None

    db.add(Member(name_key="lena berg", type=MemberType.SINGLE))
    db.commit()
    assert resolver.resolve(db, "Lena Berg") is None

    resolver.refresh(db)
    assert resolver.resolve(db, "Lena Berg") == MemberType.SINGLE


def test_cache_reloads_after_ttl(db, settings):
    now = [1000.0]
    resolver = MembershipResolver(settings.model_copy(update={"member_cache_ttl": 60}), clock=lambda: now[0])
    assert resolver.resolve(db, "Lena Berg") is None

    db.add(Member(name_key="lena berg", type=MemberType.STUDENT))
    db.commit()
    now[0] += 30
    assert resolver.resolve(db, "Lena Berg") is None
    now[0] += 31
    assert resolver.resolve(db, "Lena Berg") == MemberType.STUDENT


def test_upsert_members_refreshes_cache(db, resolver):
    assert resolver.resolve(db, "Per Holm") is None
    count = upsert_members(db, [("Per Holm", "single"), ("per  HOLM", "family"), ("Ann Ek", "pensioner")], resolver)

    assert count == 2
    assert resolver.resolve(db, "Per Holm") == MemberType.FAMILY
    assert resolver.resolve(db, "ann ek") == MemberType.PENSIONER
    assert db.query(Member).count() == 2


def test_limits_follow_settings(resolver):
    assert resolver.limit_for(MemberType.SINGLE) == 1
    assert resolver.limit_for(MemberType.FAMILY) == 6
    assert resolver.limit_for(MemberType.PENSIONER) == 1
    assert resolver.limit_for(None) == 0
