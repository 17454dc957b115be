from pathlib import Path

from sqlalchemy import select

from conftest import MEDIA_URL, headers_for, make_company, make_user, pdf_bytes
from models.intake import ScannedDocument, WhatsAppPendingSelection
from services.whatsapp import WhatsAppGateway

OWNER_CHAT = "972501234567@c.us"


def incoming(message_data: dict, chat_id: str = OWNER_CHAT, message_id: str = "BAE5F4886AE9D1E1", instance=1101) -> dict:
    return {
        "typeWebhook": "incomingMessageReceived",
        "instanceData": {"idInstance": instance, "wid": "972500000000@c.us", "typeInstance": "whatsapp"},
        "timestamp": 1760774400,
        "idMessage": message_id,
        "senderData": {"chatId": chat_id, "sender": chat_id, "chatName": "עו\"ד כהן", "senderName": "עו\"ד כהן"},
        "messageData": message_data,
    }


def image_message(mime_type: str = "image/png") -> dict:
    return {
        "typeMessage": "imageMessage",
        "fileMessageData": {"downloadUrl": MEDIA_URL, "caption": "", "mimeType": mime_type, "fileName": "scan.png"},
    }


def text_message(text: str) -> dict:
    return {"typeMessage": "textMessage", "textMessageData": {"textMessage": text}}


async def post_webhook(client, payload, secret="hook-secret"):
    return await client.post("/whatsapp/webhook", params={"secret": secret}, json=payload)


async def scanned_documents(db_session):
    result = await db_session.execute(select(ScannedDocument).execution_options(populate_existing=True))
    return list(result.scalars().all())


def stored_files(settings, prefix: str):
    root = Path(settings.local_storage_dir) / "documents" / prefix
    return [p for p in root.rglob("*") if p.is_file()] if root.exists() else []


# /whatsapp/send

async def test_send_requires_login(client):
    response = await client.post("/whatsapp/send", json={"phone": "0501234567", "message": "hi"})
    assert response.status_code == 401


async def test_send_validates_body(client, auth_headers, provider):
    response = await client.post("/whatsapp/send", headers=auth_headers, json={"message": "hi"})
    assert response.status_code == 400

    response = await client.post("/whatsapp/send", headers=auth_headers, json={"phone": "0501234567"})
    assert response.status_code == 400
    assert provider.requests == []


async def test_send_text(client, auth_headers, provider):
    response = await client.post(
        "/whatsapp/send", headers=auth_headers, json={"phone": "054-7654321", "message": "שלום"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["chat_id"] == "972547654321@c.us"
    assert body["provider_response"] == {"idMessage": "MSG1"}


async def test_send_when_not_configured(app, client, auth_headers, settings, provider):
    app.state.gateway = WhatsAppGateway(settings.model_copy(update={"green_api_token": None}), app.state.storage)

    response = await client.post("/whatsapp/send", headers=auth_headers, json={"phone": "0501234567", "message": "hi"})

    assert response.status_code == 500
    assert response.json()["error"] == "not_configured"
    assert provider.requests == []


async def test_send_stored_file_of_own_company(app, client, company, auth_headers, provider):
    path = f"{company.id}/signing/contract.pdf"
    await app.state.storage.upload(path, pdf_bytes(), "application/pdf")

    response = await client.post(
        "/whatsapp/send",
        headers=auth_headers,
        json={"phone": "0547654321", "file_url": f"documents/{path}", "file_name": "contract.pdf"},
    )

    assert response.status_code == 200
    assert provider.sent[0]["urlFile"].startswith("http://testserver/files/")


async def test_send_refuses_files_of_other_companies(app, client, company, db_session, settings, provider):
    path = f"{company.id}/signing/contract.pdf"
    await app.state.storage.upload(path, pdf_bytes(), "application/pdf")
    outsider = await make_user(db_session)
    other = await make_company(db_session, "משרד לוי", outsider)
    headers = headers_for(settings, outsider)

    for file_url in (
        path,
        f"documents/{path}",
        f"{other.id}/../{company.id}/signing/contract.pdf",
        f"_temp/whatsapp/{OWNER_CHAT}/1760774400000.png",
        "contract.pdf",
    ):
        response = await client.post(
            "/whatsapp/send", headers=headers, json={"phone": "0547654321", "file_url": file_url}
        )
        assert response.status_code == 403, file_url
        assert response.json()["error"] == "permission_denied"
    assert provider.requests == []


async def test_send_public_url_needs_no_membership(client, db_session, settings, provider):
    outsider = await make_user(db_session)

    response = await client.post(
        "/whatsapp/send",
        headers=headers_for(settings, outsider),
        json={"phone": "0547654321", "file_url": "https://cdn.example.test/brochure.pdf"},
    )

    assert response.status_code == 200
    assert provider.sent[0]["urlFile"] == "https://cdn.example.test/brochure.pdf"


# /whatsapp/webhook

async def test_webhook_requires_configured_secret(app, client, settings):
    app.state.settings = settings.model_copy(update={"webhook_secret": None})

    response = await post_webhook(client, incoming(text_message("hi")))

    assert response.status_code == 500
    assert response.json()["error"] == "not_configured"


async def test_webhook_rejects_wrong_secret(client, provider):
    response = await post_webhook(client, incoming(text_message("hi")), secret="guess")
    assert response.status_code == 401

    response = await client.post("/whatsapp/webhook", json=incoming(text_message("hi")))
    assert response.status_code == 401
    assert provider.requests == []


async def test_webhook_ignores_other_instances_and_events(client, company, provider):
    response = await post_webhook(client, incoming(text_message("hi"), instance=9999))
    assert response.json() == {"ok": True, "skipped": "instance_mismatch"}

    status_event = incoming(text_message("hi"))
    status_event["typeWebhook"] = "outgoingMessageStatus"
    response = await post_webhook(client, status_event)
    assert response.json() == {"ok": True, "skipped": "outgoingMessageStatus"}
    assert provider.requests == []


async def test_webhook_refuses_unknown_sender(client, company, provider):
    response = await post_webhook(client, incoming(image_message(), chat_id="972539999999@c.us"))

    assert response.json()["skipped"] == "unauthorized_phone"
    assert provider.sent[-1]["chatId"] == "972539999999@c.us"
    assert "לא מורשה" in provider.sent[-1]["message"]


async def test_webhook_refuses_member_without_whatsapp_permission(client, company, provider):
    # colleague has a phone but WhatsApp intake is not enabled for them
    response = await post_webhook(client, incoming(image_message(), chat_id="972527654321@c.us"))
    assert response.json()["skipped"] == "unauthorized_phone"


async def test_text_message_gets_help(client, company, provider):
    response = await post_webhook(client, incoming(text_message("מה זה?")))

    assert response.json() == {"ok": True}
    assert "שלח תמונה או PDF" in provider.sent[-1]["message"]


async def test_unsupported_file_type(client, company, provider):
    response = await post_webhook(client, incoming(image_message("video/mp4")))

    assert response.json()["skipped"] == "unsupported_mime"
    assert "סוג קובץ לא נתמך" in provider.sent[-1]["message"]


async def test_single_company_document_is_stored(client, company, owner, provider, db_session, settings):
    response = await post_webhook(client, incoming(image_message()))

    body = response.json()
    assert body["ok"] is True
    documents = await scanned_documents(db_session)
    assert len(documents) == 1
    document = documents[0]
    assert body["document_id"] == str(document.id)
    assert document.company_id == company.id
    assert document.uploaded_by == owner.id
    assert document.status == "pending_scan"
    assert document.source == "whatsapp"
    assert document.file_name == "scan.png"
    assert document.file_size == len(provider.media)
    assert document.whatsapp_message_id == "BAE5F4886AE9D1E1"
    assert document.file_url.startswith(f"{company.id}/whatsapp/")
    assert len(stored_files(settings, str(company.id))) == 1

    replies = [m["message"] for m in provider.sent]
    assert "מעבד את המסמך" in replies[0]
    assert "התקבל בהצלחה" in replies[-1]


async def test_repeated_message_is_stored_once(client, company, db_session, settings):
    await post_webhook(client, incoming(image_message()))
    response = await post_webhook(client, incoming(image_message()))

    assert "document_id" not in response.json()
    assert len(await scanned_documents(db_session)) == 1
    assert len(stored_files(settings, str(company.id))) == 1


async def test_scanner_is_notified(app, client, company, provider, settings):
    app.state.settings = settings.model_copy(update={"document_scanner_url": "https://scanner.example.test/scan"})

    response = await post_webhook(client, incoming(image_message()))

    scans = [r for r in provider.requests if r.url.host == "scanner.example.test"]
    assert len(scans) == 1
    assert response.json()["document_id"] in scans[0].content.decode()


async def test_multi_company_sender_chooses_company(client, company, owner, provider, db_session, settings):
    other = await make_company(db_session, "אלון ושות'", owner)

    response = await post_webhook(client, incoming(image_message()))

    assert response.json() == {"ok": True, "pending_company_selection": True}
    question = provider.sent[-1]["message"]
    assert "1. אלון ושות'" in question
    assert f"2. {company.name}" in question
    assert await scanned_documents(db_session) == []
    assert len(stored_files(settings, "_temp")) == 1

    response = await post_webhook(client, incoming(text_message("7"), message_id="REPLY1"))
    assert "בחירה לא תקינה" in provider.sent[-1]["message"]

    response = await post_webhook(client, incoming(text_message(" 2 "), message_id="REPLY2"))

    assert response.json() == {"ok": True}
    documents = await scanned_documents(db_session)
    assert [d.company_id for d in documents] == [company.id]
    assert documents[0].whatsapp_message_id == "BAE5F4886AE9D1E1"
    assert stored_files(settings, "_temp") == []
    assert stored_files(settings, str(other.id)) == []
    pending = await db_session.execute(select(WhatsAppPendingSelection))
    assert pending.scalars().all() == []


async def test_new_file_replaces_open_question(client, company, owner, db_session):
    await make_company(db_session, "אלון ושות'", owner)

    await post_webhook(client, incoming(image_message(), message_id="FIRST"))
    await post_webhook(client, incoming(image_message(), message_id="SECOND"))

    result = await db_session.execute(select(WhatsAppPendingSelection))
    assert [p.message_id for p in result.scalars().all()] == ["SECOND"]


async def test_user_without_company_is_unauthorized(client, db_session, provider):
    await make_user(db_session, phone="053-1112222", whatsapp_authorized=True)

    response = await post_webhook(client, incoming(image_message(), chat_id="972531112222@c.us"))

    assert response.json()["skipped"] == "unauthorized_phone"
