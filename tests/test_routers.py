"""API tests: REST routes with the store and viewer dependencies swapped for in-memory ones."""

import pytest
from httpx import ASGITransport, AsyncClient

from proposal_chat.database.connection import mongo_db_dependency
from proposal_chat.main import app
from proposal_chat.utils import realtime_bus
from proposal_chat.utils.dependencies import get_message_store, get_uploader, get_viewer

from conftest import FakeUploader, new_id


@pytest.fixture
def client_for(store, bus, monkeypatch):
    """Factory: an HTTP client authenticated as the given viewer."""
    monkeypatch.setattr(realtime_bus, "_bus", bus)

    def _make(viewer, uploader=None):
        app.dependency_overrides[get_viewer] = lambda: viewer
        app.dependency_overrides[get_message_store] = lambda: store
        app.dependency_overrides[get_uploader] = lambda: uploader or FakeUploader()
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
        return client

    yield _make
    app.dependency_overrides.clear()


class TestConversationRoutes:

    async def test_open_then_list(self, client_for, alice, proposal_id):
        async with client_for(alice) as client:
            opened = await client.post("/conversations", json={"proposal_id": proposal_id})
            again = await client.post("/conversations", json={"proposal_id": proposal_id})
            listed = await client.get("/conversations")

        assert opened.status_code == 200
        assert opened.json()["id"] == again.json()["id"]
        items = listed.json()["items"]
        assert [i["id"] for i in items] == [opened.json()["id"]]
        assert items[0]["proposal_title"] == "Solar Farm"

    async def test_messages_and_unread(self, client_for, store, admin, alice, conversation):
        await store.create_message(conversation.id, admin.id, "hello")

        async with client_for(alice) as client:
            messages = await client.get(f"/conversations/{conversation.id}/messages")
            unread = await client.get("/conversations/unread")
            marked = await client.post(f"/conversations/{conversation.id}/mark_read")
            after = await client.get("/conversations/unread")

        assert [m["body"] for m in messages.json()["items"]] == ["hello"]
        assert messages.json()["items"][0]["author"]["full_name"] == "Ada Admin"
        assert unread.json() == {"count": 1}
        assert marked.json() == {"updated": 1}
        assert after.json() == {"count": 0}

    async def test_outsider_gets_403(self, client_for, bob, conversation):
        async with client_for(bob) as client:
            response = await client.get(f"/conversations/{conversation.id}/messages")
        assert response.status_code == 403

    async def test_unknown_conversation_gets_404(self, client_for, alice):
        async with client_for(alice) as client:
            response = await client.get(f"/conversations/{new_id()}/messages")
        assert response.status_code == 404

    async def test_admin_mark_all_read(self, client_for, store, admin, alice, bob, proposal_id, conversation):
        other = await store.create_conversation(proposal_id, bob.id)
        await store.create_message(conversation.id, alice.id, "a")
        await store.create_message(other.id, bob.id, "b")

        async with client_for(admin) as client:
            response = await client.post("/conversations/mark_all_read")
            unread = await client.get("/conversations/unread")

        assert response.json() == {"updated": 2}
        assert unread.json() == {"count": 0}

    async def test_only_admin_deletes(self, client_for, repos, store, admin, alice, conversation):
        await store.create_message(conversation.id, alice.id, "bye")

        async with client_for(alice) as client:
            denied = await client.delete(f"/conversations/{conversation.id}")
        async with client_for(admin) as client:
            deleted = await client.delete(f"/conversations/{conversation.id}")

        assert denied.status_code == 403
        assert deleted.json() == {"deleted": True}
        assert repos.conversations.docs == {}
        assert repos.messages.docs == {}


class TestAttachmentRoutes:

    async def test_upload(self, client_for, alice):
        uploader = FakeUploader()
        async with client_for(alice, uploader=uploader) as client:
            response = await client.post("/attachments", files={"file": ("plan.pdf", b"%PDF-1.7", "application/pdf")})

        assert response.status_code == 200
        file_id = next(iter(uploader.files))
        assert response.json() == {"url": f"https://files.test/attachments/{file_id}/plan.pdf", "file_name": "plan.pdf"}
        assert uploader.files[file_id]["metadata"]["owner_id"] == alice.id

    async def test_oversized_upload_gets_413(self, client_for, alice):
        async with client_for(alice, uploader=FakeUploader(max_bytes=4)) as client:
            response = await client.post("/attachments", files={"file": ("big.bin", b"0123456789", "application/octet-stream")})

        assert response.status_code == 413

    async def test_owner_downloads_own_upload(self, client_for, alice):
        uploader = FakeUploader()
        attachment = await uploader.upload(b"%PDF-1.7 quote", "quote.pdf", alice.id, content_type="application/pdf")

        async with client_for(alice, uploader=uploader) as client:
            response = await client.get(attachment.url.replace("https://files.test", ""))

        assert response.status_code == 200
        assert response.content == b"%PDF-1.7 quote"
        assert response.headers["content-type"] == "application/pdf"
        assert "quote.pdf" in response.headers["content-disposition"]

    async def test_conversation_members_download_sent_attachments(self, client_for, store, admin, alice, bob, conversation):
        uploader = FakeUploader()
        attachment = await uploader.upload(b"%PDF-1.7", "plan.pdf", alice.id)
        await store.create_message(conversation.id, alice.id, "", attachment=attachment)
        path = attachment.url.replace("https://files.test", "")

        async with client_for(admin, uploader=uploader) as client:
            allowed = await client.get(path)
        async with client_for(bob, uploader=uploader) as client:
            denied = await client.get(path)

        assert allowed.status_code == 200
        assert allowed.content == b"%PDF-1.7"
        assert denied.status_code == 403

    async def test_unsent_attachment_is_private_to_its_owner(self, client_for, admin, alice):
        uploader = FakeUploader()
        attachment = await uploader.upload(b"draft", "draft.txt", alice.id)

        async with client_for(admin, uploader=uploader) as client:
            response = await client.get(attachment.url.replace("https://files.test", ""))

        assert response.status_code == 403

    async def test_unknown_attachment_gets_404(self, client_for, alice):
        async with client_for(alice) as client:
            response = await client.get(f"/attachments/{new_id()}/missing.pdf")

        assert response.status_code == 404

    async def test_download_requires_a_token(self, client_for, alice):
        uploader = FakeUploader()
        attachment = await uploader.upload(b"secret", "secret.txt", alice.id)

        async with client_for(alice, uploader=uploader) as client:
            app.dependency_overrides.pop(get_viewer)
            app.dependency_overrides[mongo_db_dependency] = lambda: None
            response = await client.get(attachment.url.replace("https://files.test", ""))

        assert response.status_code == 401
