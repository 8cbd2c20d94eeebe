"""
MS365 mail adapter.

Provides normalized interfaces for mailbox sync and sending via Microsoft Graph.
All functions return standardized dictionaries regardless of the underlying API structure.

Functions:
- get_user_profile(credential): Primary address, aliases and UPN of the signed-in user
- get_user_email_addresses(profile): Every address the user sends from
- list_folder_messages(client, folder_id, order_by): Paged message listing
- get_user_emails(credential): Inbox (with subfolders) and Sent Items, de-duplicated
- send_email(credential, to, subject, body_html, attachments): Send and save to Sent Items
"""

import asyncio
import base64
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from azure.core.credentials import TokenCredential
from bs4 import BeautifulSoup
from kiota_abstractions.base_request_configuration import RequestConfiguration
from msgraph import GraphServiceClient
from msgraph.generated.models.body_type import BodyType
from msgraph.generated.models.email_address import EmailAddress
from msgraph.generated.models.file_attachment import FileAttachment
from msgraph.generated.models.item_body import ItemBody
from msgraph.generated.models.message import Message
from msgraph.generated.models.recipient import Recipient
from msgraph.generated.users.item.mail_folders.item.messages.messages_request_builder import MessagesRequestBuilder
from msgraph.generated.users.item.send_mail.send_mail_post_request_body import SendMailPostRequestBody
from msgraph.generated.users.item.user_item_request_builder import UserItemRequestBuilder

from ._auth import MS365AdapterError, get_graph_client
from .drive import get_drive_item_content, resolve_sharing_url
from ...models import Attachment, ManualAttachment


log = logging.getLogger("edcrm.ms365.mail")

MAX_PAGES = 5
PAGE_SIZE = 999
MESSAGE_FIELDS = ["id", "sentDateTime", "receivedDateTime", "subject", "body", "toRecipients", "ccRecipients", "from"]

SIGNATURE_CONTENT_ID = "sig-logo-1"
SIGNATURE_WARN_BYTES = 3 * 1024 * 1024


async def get_user_profile(credential: TokenCredential) -> Optional[Dict[str, Any]]:
    """
    Fetch the signed-in user's addresses.

    Returns:
        Dict with keys mail, proxy_addresses, user_principal_name, display_name,
        or None if the profile could not be read
    """
    try:
        client = get_graph_client(credential)
        query_params = UserItemRequestBuilder.UserItemRequestBuilderGetQueryParameters(
            select=["displayName", "mail", "proxyAddresses", "userPrincipalName"]
        )
        user = await client.me.get(request_configuration=RequestConfiguration(query_parameters=query_params))
    except Exception as e:
        log.error("Could not fetch user profile: %s", e)
        return None

    if not user:
        return None
    return {
        "mail": user.mail,
        "proxy_addresses": list(user.proxy_addresses or []),
        "user_principal_name": user.user_principal_name,
        "display_name": user.display_name,
    }


def get_user_email_addresses(profile: Optional[Dict[str, Any]]) -> List[str]:
    """
    Lower-cased addresses of the user, aliases included.

    Example:
        get_user_email_addresses({"mail": "Jo@x.com", "proxy_addresses": ["SMTP:Jo@x.com", "smtp:j@x.com"]})
        -> ["jo@x.com", "j@x.com"]
    """
    if not profile:
        return []
    candidates = [profile.get("mail"), profile.get("user_principal_name")]
    for proxy in profile.get("proxy_addresses") or []:
        prefix, _, address = proxy.partition(":")
        if prefix.lower() == "smtp" and address:
            candidates.append(address)

    addresses: List[str] = []
    for address in candidates:
        if address and address.lower() not in addresses:
            addresses.append(address.lower())
    return addresses


def _normalize_message(message) -> Dict[str, Any]:
    sender = message.from_.email_address if message.from_ and message.from_.email_address else None
    return {
        "id": message.id,
        "subject": message.subject or "",
        "from": {
            "name": sender.name if sender else None,
            "address": sender.address if sender else None,
        },
        "to_recipients": [
            r.email_address.address for r in (message.to_recipients or []) if r.email_address
        ],
        "cc_recipients": [
            r.email_address.address for r in (message.cc_recipients or []) if r.email_address
        ],
        "sent_at": message.sent_date_time.isoformat() if message.sent_date_time else None,
        "received_at": message.received_date_time.isoformat() if message.received_date_time else None,
        "body_content": message.body.content if message.body else "",
        "body_type": message.body.content_type.value if message.body and message.body.content_type else "text",
    }


async def list_folder_messages(
    client: GraphServiceClient,
    folder_id: str,
    order_by: str = "receivedDateTime",
    max_pages: int = MAX_PAGES,
) -> List[Dict[str, Any]]:
    """
    List messages of one folder, newest first, following @odata.nextLink.

    A failing page stops paging; messages already read are kept.

    Args:
        client: Graph client
        folder_id: Folder id or well-known name (inbox, sentitems)
        order_by: receivedDateTime or sentDateTime
        max_pages: Page limit

    Returns:
        Normalized message dictionaries
    """
    builder = client.me.mail_folders.by_mail_folder_id(folder_id).messages
    query_params = MessagesRequestBuilder.MessagesRequestBuilderGetQueryParameters(
        top=PAGE_SIZE,
        orderby=[f"{order_by} desc"],
        select=MESSAGE_FIELDS,
    )
    request_config = RequestConfiguration(query_parameters=query_params)

    messages: List[Dict[str, Any]] = []
    next_link: Optional[str] = None
    for page in range(max_pages):
        try:
            if next_link:
                response = await builder.with_url(next_link).get()
            else:
                response = await builder.get(request_configuration=request_config)
        except Exception as e:
            log.error("Could not fetch messages from %s (page %d): %s", folder_id, page + 1, e)
            break

        if not response:
            break
        messages.extend(_normalize_message(m) for m in response.value or [])
        next_link = response.odata_next_link
        if not next_link:
            break
    return messages


async def _collect_folder_ids(client: GraphServiceClient, folder_id: str, found: List[str]) -> None:
    found.append(folder_id)
    builder = client.me.mail_folders.by_mail_folder_id(folder_id).child_folders
    next_link: Optional[str] = None
    while True:
        try:
            response = await (builder.with_url(next_link).get() if next_link else builder.get())
        except Exception as e:
            log.warning("Could not list child folders of %s: %s", folder_id, e)
            return
        if not response:
            return
        for child in response.value or []:
            await _collect_folder_ids(client, child.id, found)
        next_link = response.odata_next_link
        if not next_link:
            return


def _find_folder(folders, display_name: str) -> Optional[str]:
    for folder in folders:
        if (folder.display_name or "").lower() == display_name:
            return folder.id
    return None


async def get_user_emails(credential: TokenCredential) -> List[Dict[str, Any]]:
    """
    Fetch recent mail from the Inbox, all its subfolders and Sent Items.

    Falls back to the well-known inbox and sentitems folders when the folder
    tree cannot be walked.

    Returns:
        Normalized messages, de-duplicated by id

    Example:
        messages = await get_user_emails(credential)
        emails = parse_synced_emails(messages, data.schools, user_name, addresses)
    """
    client = get_graph_client(credential)
    try:
        top_level = await client.me.mail_folders.get()
        if not top_level:
            raise MS365AdapterError("Could not fetch top-level mail folders")
        folders = top_level.value or []

        folder_ids: List[str] = []
        await _collect_folder_ids(client, _find_folder(folders, "inbox") or "inbox", folder_ids)
        sent_id = _find_folder(folders, "sent items") or "sentitems"
        folder_ids.append(sent_id)

        unique_ids = list(dict.fromkeys(folder_ids))
        log.info("Syncing emails from %d folders", len(unique_ids))
        batches = await asyncio.gather(*(
            list_folder_messages(client, folder_id, "sentDateTime" if folder_id == sent_id else "receivedDateTime")
            for folder_id in unique_ids
        ))
    except Exception as e:
        log.error("Folder walk failed, syncing inbox and sent items only: %s", e)
        batches = await asyncio.gather(
            list_folder_messages(client, "sentitems", "sentDateTime"),
            list_folder_messages(client, "inbox", "receivedDateTime"),
        )

    by_id: Dict[str, Dict[str, Any]] = {}
    for batch in batches:
        for message in batch:
            by_id[message["id"]] = message
    return list(by_id.values())


async def process_html_for_inline_signature(
    credential: TokenCredential,
    body_html: str,
) -> Tuple[str, Optional[FileAttachment]]:
    """
    Replace the first SharePoint-hosted image with an inline attachment.

    Recipients outside the organisation cannot load SharePoint images, so the
    image is downloaded and referenced as cid:sig-logo-1.

    Returns:
        (html, attachment); the original html and None if the image cannot be fetched
    """
    soup = BeautifulSoup(body_html, "html.parser")
    image = soup.find("img", src=lambda src: bool(src) and "sharepoint.com" in src)
    if image is None:
        return body_html, None

    try:
        item = await resolve_sharing_url(credential, image["src"])
        if not item:
            log.warning("Could not resolve signature image URL to a drive item: %s", image["src"])
            return body_html, None
        content = await get_drive_item_content(credential, item["drive_id"], item["item_id"])
    except MS365AdapterError as e:
        log.error("Failed to process inline signature image: %s", e)
        return body_html, None

    if len(content) > SIGNATURE_WARN_BYTES:
        log.warning("Signature image is large (%.2f MB). Consider compressing it.", len(content) / 1024 / 1024)

    image["src"] = f"cid:{SIGNATURE_CONTENT_ID}"
    attachment = FileAttachment(
        odata_type="#microsoft.graph.fileAttachment",
        name="signature.png",
        content_type="image/png",
        is_inline=True,
        content_id=SIGNATURE_CONTENT_ID,
        content_bytes=content,
    )
    return str(soup), attachment


async def _file_attachment(credential: TokenCredential, attachment: Attachment) -> Optional[FileAttachment]:
    if isinstance(attachment, ManualAttachment):
        if not attachment.content_bytes:
            return None
        content = base64.b64decode(attachment.content_bytes)
    else:
        content = await get_drive_item_content(credential, attachment.drive_id, attachment.file_id)
    return FileAttachment(
        odata_type="#microsoft.graph.fileAttachment",
        name=attachment.name,
        content_type=attachment.content_type or None,
        content_bytes=content,
    )


async def send_email(
    credential: TokenCredential,
    to: str,
    subject: str,
    body_html: str,
    attachments: Sequence[Attachment] = (),
) -> None:
    """
    Send an HTML email from the signed-in user and save it to Sent Items.

    Args:
        credential: Token credential
        to: Recipient address
        subject: Email subject
        body_html: HTML body; a SharePoint signature image is inlined
        attachments: Manual (base64) or SharePoint attachments

    Raises:
        MS365AdapterError: If an attachment cannot be fetched or sending fails

    Example:
        await send_email(cred, "head@school.org.uk", "Cover", "<p>Hello</p>")
    """
    try:
        client = get_graph_client(credential)
        html, inline = await process_html_for_inline_signature(credential, body_html)

        payloads: List[FileAttachment] = [inline] if inline else []
        for attachment in attachments:
            payload = await _file_attachment(credential, attachment)
            if payload:
                payloads.append(payload)

        message = Message(
            subject=subject,
            body=ItemBody(content_type=BodyType.Html, content=html),
            to_recipients=[Recipient(email_address=EmailAddress(address=to))],
            attachments=payloads,
        )
        await client.me.send_mail.post(SendMailPostRequestBody(message=message, save_to_sent_items=True))
        log.info("Sent email '%s' to %s with %d attachments", subject, to, len(payloads))
    except MS365AdapterError:
        raise
    except Exception as e:
        raise MS365AdapterError(f"Failed to send email to {to}: {e}")
