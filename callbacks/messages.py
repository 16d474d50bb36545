"""Operator-facing message text (Telegram HTML) and button layouts."""

from __future__ import annotations

from datetime import datetime
from html import escape
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from callbacks.channels.base import InlineAction, Keyboard
from callbacks.models.request import CallbackRequest, RequestStatus
from callbacks.models.session import CollectedInfo

NOT_SPECIFIED = "Not specified"
DATE_FORMAT_HINT = "DD.MM.YYYY HH:MM"
DATE_EXAMPLES = ("25.12.2030 14:30", "01.01.2031 09:00", "15.06.2031 16:45")

STATUS_LABELS = {
    RequestStatus.PENDING: "⏳ Pending",
    RequestStatus.IN_PROGRESS: "🔄 In progress",
    RequestStatus.CONTACTED: "📞 Contacted",
    RequestStatus.COMPLETED: "✅ Completed",
    RequestStatus.CANCELLED: "❌ Cancelled",
}


def status_label(status: RequestStatus) -> str:
    return STATUS_LABELS.get(status, str(status))


def _e(value: Optional[str]) -> str:
    return escape(value) if value else NOT_SPECIFIED


def format_local(when: Optional[datetime], tz: ZoneInfo) -> str:
    if when is None:
        return NOT_SPECIFIED
    return when.astimezone(tz).strftime("%d.%m.%Y %H:%M")


# ── Buttons ──────────────────────────────────────────────────────────


def new_request_actions(record_id: str) -> Keyboard:
    return [[
        InlineAction("✅ Contacted", f"contacted_{record_id}"),
        InlineAction("❌ Cancel", f"cancel_{record_id}"),
    ]]


def schedule_actions(record_id: str) -> Keyboard:
    return [[InlineAction("📅 Schedule visit", f"schedule_{record_id}")]]


def complete_actions(record_id: str) -> Keyboard:
    return [[InlineAction("✅ Mark as completed", f"complete_{record_id}")]]


# ── Operator channel ─────────────────────────────────────────────────


def new_request(record: CallbackRequest, tz: ZoneInfo) -> str:
    return (
        "🔔 <b>New callback request</b>\n\n"
        f"👤 <b>Name:</b> {_e(record.name)}\n"
        f"📞 <b>Phone:</b> {_e(record.phone)}\n"
        f"🔧 <b>Service:</b> {_e(record.service_type)}\n"
        f"🕐 <b>Received:</b> {format_local(record.created_at, tz)}\n"
        f"🆔 <b>Request ID:</b> <code>{escape(record.id)}</code>\n\n"
        f"📋 <b>Status:</b> {status_label(record.status)}"
    )


def status_update(record: CallbackRequest, status_text: str, tz: ZoneInfo) -> str:
    return new_request(record, tz) + f"\n\n🔄 <b>Update:</b> {escape(status_text)}"


def system_error(message: str) -> str:
    return f"❌ <b>System error</b>\n\n<code>{escape(message)}</code>"


def system_notice(message: str) -> str:
    return f"ℹ️ <b>System notice</b>\n\n{escape(message)}"


# ── Information collection ───────────────────────────────────────────


def info_card(record: CallbackRequest, collected: CollectedInfo, prompt: str) -> str:
    lines = [
        "📋 <b>Request assigned to you</b>\n",
        f"🆔 <b>Request:</b> <code>{escape(record.id)}</code>",
        f"👤 <b>Client:</b> {_e(record.name)}",
        f"📞 <b>Phone:</b> {_e(record.phone)}",
        f"🔧 <b>Service:</b> {_e(record.service_type)}",
    ]
    recorded = []
    if collected.address:
        recorded.append(f"📍 <b>Address saved:</b> {escape(collected.address)}")
    if collected.detailed_service_type:
        recorded.append(f"🔧 <b>Service type saved:</b> {escape(collected.detailed_service_type)}")
    if recorded:
        lines.append("")
        lines.extend(recorded)
    lines.append("")
    lines.append(prompt)
    return "\n".join(lines)


PROMPT_ADDRESS = "📝 <b>Send the client's address:</b>"
PROMPT_SERVICE_TYPE = (
    "🔧 <b>Now specify the service type:</b>\n"
    "(for example: \"Fridge repair\", \"Compressor replacement\", \"Washer diagnostics\")"
)
PROMPT_PROBLEM = (
    "❓ <b>Describe the problem (optional):</b>\n"
    "Or send \"-\" to skip"
)


def _request_details(record: CallbackRequest, collected: CollectedInfo | None = None) -> list[str]:
    address = collected.address if collected else record.address
    service = (collected.detailed_service_type if collected else None) or record.display_service
    problem = collected.problem_description if collected else record.problem_description
    lines = [
        f"🆔 <b>Request:</b> <code>{escape(record.id)}</code>",
        f"👤 <b>Client:</b> {_e(record.name)}",
        f"📞 <b>Phone:</b> {_e(record.phone)}",
        f"📍 <b>Address:</b> {_e(address)}",
        f"🔧 <b>Service:</b> {_e(service)}",
    ]
    if problem:
        lines.append(f"❓ <b>Problem:</b> {escape(problem)}")
    return lines


def info_collected(record: CallbackRequest, collected: CollectedInfo) -> str:
    return "\n".join(
        ["✅ <b>Information collected and saved</b>\n"]
        + _request_details(record, collected)
        + ["", "📅 <b>Ready to schedule a visit</b>"]
    )


# ── Scheduling ───────────────────────────────────────────────────────


def _examples() -> str:
    return "\n".join(f"• <code>{example}</code>" for example in DATE_EXAMPLES)


def scheduling_prompt(record: CallbackRequest) -> str:
    return "\n".join(
        ["📅 <b>Visit scheduling</b>\n"]
        + _request_details(record)
        + [
            "",
            "📝 <b>Send the visit date and time as:</b>",
            f"<code>{DATE_FORMAT_HINT}</code>",
            "",
            "<b>Examples:</b>",
            _examples(),
            "",
            "💡 <b>Or send /cancel to stop scheduling</b>",
        ]
    )


def wrong_date_format() -> str:
    return (
        "❌ <b>Wrong date format, use DD.MM.YYYY HH:MM</b>\n\n"
        "The visit must be a valid date in the future.\n\n"
        "<b>Examples:</b>\n"
        f"{_examples()}\n\n"
        "💡 <b>Or /cancel to stop</b>"
    )


def visit_scheduled(record: CallbackRequest, when: datetime, tz: ZoneInfo, lead_minutes: int) -> str:
    return "\n".join(
        [
            "✅ <b>Visit scheduled</b>\n",
            f"📅 <b>Date and time:</b> {format_local(when, tz)}",
        ]
        + _request_details(record)
        + [
            "",
            f"⏰ <b>A reminder will be sent {lead_minutes} minutes before the visit</b>",
            "",
            "📋 <b>Use /schedule to see all scheduled visits</b>",
        ]
    )


def reminder(record_id: str, client_name: str, service_type: Optional[str],
             when: datetime, tz: ZoneInfo, lead_minutes: int) -> str:
    return (
        "⏰ <b>Visit reminder</b>\n\n"
        f"🕐 <b>In {lead_minutes} minutes:</b> {format_local(when, tz)}\n"
        f"🆔 <b>Request:</b> <code>{escape(record_id)}</code>\n"
        f"👤 <b>Client:</b> {_e(client_name)}\n"
        f"🔧 <b>Service:</b> {_e(service_type)}\n\n"
        "📍 <b>Don't forget to prepare for the visit!</b>"
    )


# ── Commands ─────────────────────────────────────────────────────────


def welcome(name: str) -> str:
    return (
        f"👋 <b>Welcome, {escape(name)}!</b>\n\n"
        "I deliver callback requests to the operator group.\n\n"
        "📋 <b>Commands:</b>\n"
        "/start - Show this message\n"
        "/help - Help\n"
        "/status - System status\n"
        "/schedule - Your scheduled visits\n"
        "/pending - Clients ready for scheduling\n\n"
        "📞 <b>How it works:</b>\n"
        "1. A client leaves a request on the website\n"
        "2. You get a notification in the group\n"
        "3. You manage the request with the buttons"
    )


HELP = (
    "ℹ️ <b>Help</b>\n\n"
    "🤖 <b>What I do:</b>\n"
    "• Post new requests to the operator group\n"
    "• Collect visit details from the assigned operator\n"
    "• Schedule visits and remind you before them\n\n"
    "📱 <b>Commands:</b>\n"
    "/start - Main menu\n"
    "/help - This help\n"
    "/status - System status\n"
    "/schedule - Your scheduled visits\n"
    "/pending - Clients ready for scheduling\n"
    "/cancel - Cancel the current action"
)

UNKNOWN_MESSAGE = (
    "📝 <b>Message received</b>\n\n"
    "🤖 Use /help to see what I can do."
)


def system_status(listener_state: str, now: datetime, tz: ZoneInfo) -> str:
    healthy = listener_state.upper() == "SUBSCRIBED"
    return (
        "📊 <b>System status</b>\n\n"
        "✅ <b>Bot:</b> Running\n"
        f"📡 <b>Realtime:</b> {escape(listener_state)}\n"
        f"🕐 <b>Time:</b> {format_local(now, tz)}\n\n"
        + ("💚 All systems operational!" if healthy else "⚠️ Realtime notifications are degraded.")
    )


NO_SCHEDULE = (
    "📅 <b>Your scheduled visits</b>\n\n"
    "📭 <b>You have no scheduled visits</b>\n\n"
    "💡 <b>To schedule a visit:</b>\n"
    "1. Use /pending to see clients ready for scheduling\n"
    "2. Press \"Schedule visit\"\n"
    "3. Send the date and time"
)

NO_PENDING = (
    "📋 <b>Clients ready for scheduling</b>\n\n"
    "📭 <b>You have no clients ready for scheduling</b>\n\n"
    "💡 <b>Clients show up here after you:</b>\n"
    "1. Press \"Contacted\" on a request in the group\n"
    "2. Collect the details in direct messages\n"
    "3. Before the visit is scheduled"
)


def _service_line(record: CallbackRequest) -> str:
    service = record.detailed_service_type or NOT_SPECIFIED
    if record.problem_description:
        service += f", {record.problem_description}"
    return escape(service)


def schedule_list(
    entries: Iterable[tuple[CallbackRequest, datetime]], now: datetime, tz: ZoneInfo,
) -> tuple[str, Keyboard]:
    entries = list(entries)
    if not entries:
        return NO_SCHEDULE, []
    lines = ["📅 <b>Your scheduled visits</b>\n"]
    keyboard = []
    for index, (record, when) in enumerate(entries, 1):
        hours_until = round((when - now).total_seconds() / 3600)
        if hours_until > 0:
            due = f"⏰ In {hours_until} h."
        elif hours_until > -24:
            due = "🔴 Overdue"
        else:
            due = "🔴 Long overdue"
        lines.extend([
            f"{index}. 👤 <b>{_e(record.name)}</b>",
            f"   📞 {_e(record.phone)}",
            f"   📍 {_e(record.address)}",
            f"   🔧 {_service_line(record)}",
            f"   📅 {format_local(when, tz)}",
            f"   {due}",
            "",
        ])
        keyboard.append([
            InlineAction(f"✅ Mark as completed: {record.name}", f"complete_{record.id}")
        ])
    lines.append(f"📋 <b>Total scheduled:</b> {len(entries)}")
    return "\n".join(lines), keyboard


def pending_list(records: list[CallbackRequest], tz: ZoneInfo) -> tuple[str, Keyboard]:
    if not records:
        return NO_PENDING, []
    lines = [
        "📋 <b>Clients ready for scheduling</b>\n",
        "Details collected, pick a client to schedule a visit:\n",
    ]
    keyboard = []
    for index, record in enumerate(records, 1):
        lines.extend([
            f"{index}. 👤 <b>{_e(record.name)}</b>",
            f"   📞 {_e(record.phone)}",
            f"   📍 {_e(record.address)}",
            f"   🔧 {_service_line(record)}",
            f"   📞 Received: {format_local(record.created_at, tz)}",
            "",
        ])
        keyboard.append([
            InlineAction(f"📅 Schedule visit: {record.name}", f"schedule_pending_{record.id}")
        ])
    lines.append(f"📊 <b>Ready for scheduling:</b> {len(records)}")
    return "\n".join(lines), keyboard
