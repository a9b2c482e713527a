"""Message rendering for reminders and the daily agenda (pt-BR, owner's local time)."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Sequence
from zoneinfo import ZoneInfo

from .. import models
from ..core.config import settings
from ..core.timezones import due_instant, to_local
from .notifications import Message, TemplateMessage


CATEGORY_ICONS = {
    models.CommitmentCategory.PAYMENT: "💳",
    models.CommitmentCategory.MEETING: "👥",
    models.CommitmentCategory.APPOINTMENT: "🏥",
    models.CommitmentCategory.OTHER: "📌",
}

WEEKDAYS = ("segunda-feira", "terça-feira", "quarta-feira", "quinta-feira", "sexta-feira", "sábado", "domingo")
MONTHS = (
    "janeiro", "fevereiro", "março", "abril", "maio", "junho",
    "julho", "agosto", "setembro", "outubro", "novembro", "dezembro",
)


def format_local(value: datetime) -> str:
    """``segunda-feira, 25 de março de 2024 às 14:00`` for an aware local datetime."""
    return (
        f"{WEEKDAYS[value.weekday()]}, {value.day} de {MONTHS[value.month - 1]} de {value.year}"
        f" às {value:%H:%M}"
    )


def _count(value: int, singular: str, plural: str) -> str:
    return f"1 {singular}" if value == 1 else f"{value} {plural}"


def lead_time(minutes: int) -> str:
    """Approximate time left: whole days from a day on, hours and minutes below that."""
    if minutes <= 0:
        return "agora"
    if minutes >= 1440:
        return _count(round(minutes / 1440), "dia", "dias")
    hours, rest = divmod(minutes, 60)
    if not hours:
        return _count(rest, "minuto", "minutos")
    if not rest:
        return _count(hours, "hora", "horas")
    return f"{_count(hours, 'hora', 'horas')} e {_count(rest, 'minuto', 'minutos')}"


def format_amount(amount: Decimal | float) -> str:
    value = f"{Decimal(str(amount)):,.2f}"
    # 1,234.56 -> 1.234,56
    return "R$ " + value.replace(",", "_").replace(".", ",").replace("_", ".")


def _template(*parameters: str) -> TemplateMessage | None:
    if not settings.WHATSAPP_REMINDER_TEMPLATE:
        return None
    return TemplateMessage(
        name=settings.WHATSAPP_REMINDER_TEMPLATE,
        language=settings.WHATSAPP_TEMPLATE_LANGUAGE,
        parameters=tuple(parameters),
    )


def commitment_reminder(
    commitment: models.Commitment, minutes_before: int, zone: ZoneInfo, remaining_minutes: int | None = None
) -> Message:
    left = lead_time(minutes_before if remaining_minutes is None else remaining_minutes)
    icon = CATEGORY_ICONS.get(commitment.category, "📌")
    when = format_local(to_local(commitment.scheduled_at, zone))
    lines = [
        "🔔 *Lembrete de Compromisso*",
        "",
        f"{icon} *{commitment.title}*",
        f"🗓️ {when}",
    ]
    if commitment.location:
        lines.append(f"📍 {commitment.location}")
    if commitment.description:
        lines.append(f"📝 {commitment.description}")
    lines += ["", f"⏰ Faltam aproximadamente {left}!"]
    return Message(
        text="\n".join(lines),
        template=_template(commitment.title, when, left),
        metadata={"commitment_id": commitment.id, "minutes_before": minutes_before},
    )


def instance_reminder(
    instance: models.RecurringInstance, minutes_before: int, zone: ZoneInfo, remaining_minutes: int | None = None
) -> Message:
    left = lead_time(minutes_before if remaining_minutes is None else remaining_minutes)
    verb = "Recebimento" if instance.kind == models.EntryKind.INCOME else "Pagamento"
    when = format_local(to_local(due_instant(instance.due_date, zone), zone))
    lines = [
        f"🔔 *{verb} recorrente*",
        "",
        f"💳 *{instance.title}* - {format_amount(instance.amount)}",
        f"🗓️ Vence {when}",
    ]
    if instance.status == models.InstanceStatus.POSTPONED and instance.notes:
        lines.append(f"📝 {instance.notes}")
    lines += ["", f"⏰ Faltam aproximadamente {left}!"]
    return Message(
        text="\n".join(lines),
        template=_template(instance.title, when, left),
        metadata={"instance_id": instance.id, "minutes_before": minutes_before},
    )


def _period_icon(hour: int) -> str:
    if 6 <= hour < 12:
        return "🌅"
    if 12 <= hour < 18:
        return "☀️"
    if 18 <= hour < 22:
        return "🌆"
    return "🌙"


def daily_agenda(commitments: Sequence[models.Commitment], zone: ZoneInfo) -> Message:
    if not commitments:
        return Message(text="🎉 *Bom dia!*\n\nHoje você não tem compromissos agendados.\nAproveite seu dia livre! 😊")

    parts = ["📅 *Sua agenda para hoje:*", ""]
    for commitment in commitments:
        local = to_local(commitment.scheduled_at, zone)
        parts.append(f"{_period_icon(local.hour)} {local:%H:%M} - {commitment.title}")
        if commitment.location:
            parts.append(f"   📍 {commitment.location}")
        parts.append("")
    parts.append("💡 Você receberá um lembrete antes de cada compromisso!")
    return Message(text="\n".join(parts), metadata={"count": len(commitments)})
