"""
tests/test_sharing.py -- Document lifecycle and sharing services.

Runs the real services against temp-file stores and an in-process cache, so
cache invalidation after every share-table write is exercised too.

Covers:
  - create limited to designers/admins; owner entry written with the document
  - share / update_role / revoke rules (owner entry untouchable, inactive or
    unknown targets, non-assignable roles)
  - the alice/bob scenario end to end
  - the share table, share candidates and document history need "share"
  - normalize_for_user() lowers entries after a system role change
  - audit records for every mutation
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from audit.models import AuditAction
from audit.trail import AuditTrail
from auth.access import Action, DocumentAccessService
from auth.identity import IdentityResolver
from auth.models import SystemRole
from cache.store import CacheKeys, MemoryCache
from core.errors import Forbidden, NotFound, ValidationFailed
from documents.models import DocumentRole
from documents.service import DocumentService
from documents.sharing import ShareService, normalized_role


@pytest.fixture
async def services(identity_store, document_store, audit_store):
    cache = MemoryCache()
    resolver = IdentityResolver(identity_store, cache, ttl_seconds=60)
    access = DocumentAccessService(document_store, cache, ttl_seconds=60)
    audit = AuditTrail(audit_store, maxsize=100)
    return SimpleNamespace(
        cache=cache,
        access=access,
        audit=audit,
        audit_store=audit_store,
        documents=DocumentService(document_store, access, resolver, audit),
        sharing=ShareService(document_store, identity_store, access, resolver, audit),
    )


async def _actions(services) -> list[AuditAction]:
    await services.audit.flush()
    page = await services.audit_store.query(limit=100)
    return [r.action for r in reversed(page.records)]


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


async def test_create_writes_owner_entry(services, make_identity):
    bob = await make_identity("bob@example.com", SystemRole.designer)
    document = await services.documents.create(bob, "  Spring Jacket  ")

    assert document.name == "Spring Jacket"
    assert document.owner_id == bob.id
    entries = await services.sharing.list_access(bob, document.id)
    assert [(e.user_id, e.role) for e in entries] == [(bob.id, DocumentRole.owner)]
    assert await _actions(services) == [AuditAction.CREATE_TECHPACK]


@pytest.mark.parametrize("role", [SystemRole.viewer, SystemRole.merchandiser])
async def test_create_requires_designer_or_admin(services, make_identity, role):
    user = await make_identity(f"{role.value}@example.com", role)
    with pytest.raises(Forbidden):
        await services.documents.create(user, "Nope")


async def test_create_rejects_blank_name(services, make_identity):
    bob = await make_identity("bob@example.com")
    with pytest.raises(ValidationFailed):
        await services.documents.create(bob, "   ")


async def test_alice_and_bob(services, make_identity):
    bob = await make_identity("bob@example.com", SystemRole.designer)
    alice = await make_identity("alice@example.com", SystemRole.designer)
    doc1 = await services.documents.create(bob, "doc1")

    with pytest.raises(Forbidden):
        await services.access.check(alice, doc1.id, Action.view)

    await services.sharing.share(bob, doc1.id, alice.id, DocumentRole.editor)

    _, decision = await services.access.check(alice, doc1.id, Action.view, Action.edit)
    assert decision.effective_role is DocumentRole.editor
    with pytest.raises(Forbidden):
        await services.access.check(alice, doc1.id, Action.delete)

    renamed = await services.documents.rename(alice, doc1.id, "doc1 v2")
    assert renamed.name == "doc1 v2"
    with pytest.raises(Forbidden):
        await services.documents.delete(alice, doc1.id)


async def test_list_visible(services, make_identity):
    bob = await make_identity("bob@example.com")
    alice = await make_identity("alice@example.com")
    admin = await make_identity("root@example.com", SystemRole.admin)
    mine = await services.documents.create(bob, "mine")
    shared = await services.documents.create(alice, "shared")
    await services.documents.create(alice, "private")
    await services.sharing.share(alice, shared.id, bob.id, DocumentRole.viewer)

    visible = {d.id for d in await services.documents.list_visible(bob)}
    assert visible == {mine.id, shared.id}
    assert len(await services.documents.list_visible(admin)) == 3


async def test_delete_by_owner_and_admin(services, make_identity):
    bob = await make_identity("bob@example.com")
    admin = await make_identity("root@example.com", SystemRole.admin)
    first = await services.documents.create(bob, "first")
    second = await services.documents.create(bob, "second")

    await services.documents.delete(bob, first.id)
    await services.documents.delete(admin, second.id)

    for document_id in (first.id, second.id):
        with pytest.raises(NotFound):
            await services.documents.get(bob, document_id)


# ---------------------------------------------------------------------------
# Sharing rules
# ---------------------------------------------------------------------------


async def test_share_invalidates_cached_snapshot(services, make_identity):
    bob = await make_identity("bob@example.com")
    carol = await make_identity("carol@example.com", SystemRole.merchandiser)
    doc = await services.documents.create(bob, "doc")
    await services.access.snapshot(doc.id)
    assert await services.cache.get(CacheKeys.document_access(doc.id)) is not None

    await services.sharing.share(bob, doc.id, carol.id, DocumentRole.editor)

    assert await services.cache.get(CacheKeys.document_access(doc.id)) is None
    _, decision = await services.access.check(carol, doc.id, Action.edit)
    assert decision.effective_role is DocumentRole.editor


async def test_share_twice_updates(services, make_identity):
    bob = await make_identity("bob@example.com")
    dave = await make_identity("dave@example.com")
    doc = await services.documents.create(bob, "doc")

    await services.sharing.share(bob, doc.id, dave.id, DocumentRole.viewer)
    entry = await services.sharing.share(bob, doc.id, dave.id, DocumentRole.admin)

    assert entry.role is DocumentRole.admin
    assert len(await services.sharing.list_access(bob, doc.id)) == 2
    assert await _actions(services) == [
        AuditAction.CREATE_TECHPACK,
        AuditAction.SHARE_TECHPACK,
        AuditAction.UPDATE_SHARE,
    ]


async def test_share_requires_share_action(services, make_identity):
    bob = await make_identity("bob@example.com")
    eve = await make_identity("eve@example.com")
    fred = await make_identity("fred@example.com")
    doc = await services.documents.create(bob, "doc")
    await services.sharing.share(bob, doc.id, eve.id, DocumentRole.editor)

    with pytest.raises(Forbidden):
        await services.sharing.share(eve, doc.id, fred.id, DocumentRole.viewer)


async def test_document_admin_can_share(services, make_identity):
    bob = await make_identity("bob@example.com")
    eve = await make_identity("eve@example.com")
    fred = await make_identity("fred@example.com", SystemRole.viewer)
    doc = await services.documents.create(bob, "doc")
    await services.sharing.share(bob, doc.id, eve.id, DocumentRole.admin)

    entry = await services.sharing.share(eve, doc.id, fred.id, DocumentRole.viewer)
    assert entry.shared_by == eve.id


async def test_owner_role_never_granted(services, make_identity):
    bob = await make_identity("bob@example.com")
    eve = await make_identity("eve@example.com")
    doc = await services.documents.create(bob, "doc")
    with pytest.raises(ValidationFailed):
        await services.sharing.share(bob, doc.id, eve.id, DocumentRole.owner)


async def test_owner_entry_cannot_be_changed_or_revoked(services, make_identity):
    bob = await make_identity("bob@example.com")
    doc = await services.documents.create(bob, "doc")
    with pytest.raises(ValidationFailed):
        await services.sharing.share(bob, doc.id, bob.id, DocumentRole.viewer)
    with pytest.raises(ValidationFailed):
        await services.sharing.update_role(bob, doc.id, bob.id, DocumentRole.viewer)
    with pytest.raises(ValidationFailed):
        await services.sharing.revoke(bob, doc.id, bob.id)


async def test_share_with_unknown_or_inactive_user(services, make_identity):
    bob = await make_identity("bob@example.com")
    gone = await make_identity("gone@example.com", is_active=False)
    doc = await services.documents.create(bob, "doc")
    with pytest.raises(NotFound):
        await services.sharing.share(bob, doc.id, 9999, DocumentRole.viewer)
    with pytest.raises(NotFound):
        await services.sharing.share(bob, doc.id, gone.id, DocumentRole.viewer)


@pytest.mark.parametrize(
    "system_role, share_role",
    [
        (SystemRole.viewer, DocumentRole.editor),
        (SystemRole.merchandiser, DocumentRole.admin),
        (SystemRole.designer, DocumentRole.factory),
    ],
)
async def test_share_rejects_unassignable_role(services, make_identity, system_role, share_role):
    bob = await make_identity("bob@example.com")
    target = await make_identity("target@example.com", system_role)
    doc = await services.documents.create(bob, "doc")
    with pytest.raises(ValidationFailed) as excinfo:
        await services.sharing.share(bob, doc.id, target.id, share_role)
    assert excinfo.value.details == {"system_role": system_role.value, "requested_role": share_role.value}


async def test_update_role_requires_existing_entry(services, make_identity):
    bob = await make_identity("bob@example.com")
    gail = await make_identity("gail@example.com")
    doc = await services.documents.create(bob, "doc")
    with pytest.raises(NotFound):
        await services.sharing.update_role(bob, doc.id, gail.id, DocumentRole.viewer)

    await services.sharing.share(bob, doc.id, gail.id, DocumentRole.viewer)
    entry = await services.sharing.update_role(bob, doc.id, gail.id, DocumentRole.editor)
    assert entry.role is DocumentRole.editor


async def test_revoke(services, make_identity):
    bob = await make_identity("bob@example.com")
    hal = await make_identity("hal@example.com")
    doc = await services.documents.create(bob, "doc")
    await services.sharing.share(bob, doc.id, hal.id, DocumentRole.editor)

    await services.sharing.revoke(bob, doc.id, hal.id)

    with pytest.raises(Forbidden):
        await services.access.check(hal, doc.id, Action.view)
    with pytest.raises(NotFound):
        await services.sharing.revoke(bob, doc.id, hal.id)
    assert (await _actions(services))[-1] is AuditAction.REVOKE_SHARE


# ---------------------------------------------------------------------------
# Share-gated reads
# ---------------------------------------------------------------------------


async def test_list_access_requires_share(services, make_identity):
    bob = await make_identity("bob@example.com")
    kim = await make_identity("kim@example.com", SystemRole.viewer)
    lee = await make_identity("lee@example.com")
    doc = await services.documents.create(bob, "doc")
    await services.sharing.share(bob, doc.id, kim.id, DocumentRole.factory)
    await services.sharing.share(bob, doc.id, lee.id, DocumentRole.admin)

    with pytest.raises(Forbidden) as excinfo:
        await services.sharing.list_access(kim, doc.id)
    assert excinfo.value.details["missing_actions"] == ["share"]
    assert {e.user_id for e in await services.sharing.list_access(lee, doc.id)} == {bob.id, kim.id, lee.id}


async def test_shareable_users(services, make_identity):
    bob = await make_identity("bob@example.com")
    kim = await make_identity("kim@example.com", SystemRole.viewer)
    lee = await make_identity("lee@example.com", SystemRole.merchandiser)
    await make_identity("off@example.com", is_active=False)
    doc = await services.documents.create(bob, "doc")
    await services.sharing.share(bob, doc.id, lee.id, DocumentRole.viewer)

    candidates, total = await services.sharing.shareable_users(bob, doc.id)

    by_id = {c.identity.id: c for c in candidates}
    assert total == 2
    assert set(by_id) == {kim.id, lee.id}
    assert by_id[kim.id].assignable_roles == [DocumentRole.viewer, DocumentRole.factory]
    assert by_id[lee.id].assignable_roles == [DocumentRole.editor, DocumentRole.viewer, DocumentRole.factory]
    assert by_id[lee.id].current_role is DocumentRole.viewer
    assert "hashed_password" not in by_id[lee.id].to_dict()

    with pytest.raises(Forbidden):
        await services.sharing.shareable_users(lee, doc.id)


async def test_history_is_scoped_to_the_document(services, make_identity):
    bob = await make_identity("bob@example.com")
    mia = await make_identity("mia@example.com")
    doc = await services.documents.create(bob, "doc")
    other = await services.documents.create(bob, "other")
    await services.sharing.share(bob, doc.id, mia.id, DocumentRole.editor)
    await services.sharing.share(bob, other.id, mia.id, DocumentRole.viewer)
    await services.audit.flush()

    page = await services.sharing.history(bob, doc.id)

    assert [r.action for r in page.records] == [AuditAction.SHARE_TECHPACK, AuditAction.CREATE_TECHPACK]
    assert {r.resource_id for r in page.records} == {str(doc.id)}
    with pytest.raises(Forbidden):
        await services.sharing.history(mia, doc.id)


# ---------------------------------------------------------------------------
# Normalization after a system role change
# ---------------------------------------------------------------------------


def test_normalized_role():
    assert normalized_role(SystemRole.viewer, DocumentRole.admin) is DocumentRole.viewer
    assert normalized_role(SystemRole.merchandiser, DocumentRole.admin) is DocumentRole.editor
    assert normalized_role(SystemRole.designer, DocumentRole.factory) is DocumentRole.viewer
    assert normalized_role(SystemRole.designer, DocumentRole.editor) is DocumentRole.editor
    assert normalized_role(SystemRole.viewer, DocumentRole.factory) is DocumentRole.factory


async def test_normalize_for_user(services, identity_store, make_identity):
    bob = await make_identity("bob@example.com")
    ivy = await make_identity("ivy@example.com", SystemRole.designer)
    kept = await services.documents.create(bob, "kept")
    lowered = await services.documents.create(bob, "lowered")
    own = await services.documents.create(ivy, "own")
    await services.sharing.share(bob, kept.id, ivy.id, DocumentRole.viewer)
    await services.sharing.share(bob, lowered.id, ivy.id, DocumentRole.admin)

    await identity_store.mutate(ivy.id, lambda current: {"role": SystemRole.viewer})
    changed = await services.sharing.normalize_for_user(ivy.id, SystemRole.viewer)

    assert changed == [lowered.id]
    snapshot = await services.access.snapshot(lowered.id)
    assert snapshot.share_for(ivy.id).role is DocumentRole.viewer
    # Owner entries are never lowered.
    assert (await services.access.snapshot(own.id)).share_for(ivy.id).role is DocumentRole.owner


async def test_forget_user(services, make_identity):
    bob = await make_identity("bob@example.com")
    jon = await make_identity("jon@example.com")
    doc = await services.documents.create(bob, "doc")
    await services.sharing.share(bob, doc.id, jon.id, DocumentRole.viewer)

    assert await services.sharing.forget_user(jon.id) == [doc.id]
    assert (await services.access.snapshot(doc.id)).share_for(jon.id) is None
