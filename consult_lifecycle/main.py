"""Operator console for driving cases through their lifecycle."""

import logging
import shlex
from dataclasses import dataclass, field

from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown

from consult_lifecycle import config
from consult_lifecycle.case_records.database import init_database
from consult_lifecycle.case_records.scripts.seed_database import seed_database
from consult_lifecycle.errors import LifecycleError
from consult_lifecycle.fees import compose_fee, format_minor_units
from consult_lifecycle.orchestrator import CaseView, Intent, LifecycleOrchestrator, TransitionResult
from consult_lifecycle.permissions import Actor, Role

console = Console()

HELP = """
**Commands**

- `as <ROLE> <id> [patients=p-1,p-2]` - act as someone else
- `submit title=... urgency_level=HIGH [owner_patient_id=...]`
- `show <case_id>` / `intents <case_id>` / `quote <case_id>`
- `<intent> <case_id> [key=value ...]`, e.g. `assign <case_id> doctor_id=d-001`
- `seed` - load demo coupons and cases
- `quit`

Intents: """ + ", ".join(i.value.lower() for i in Intent)

# Payload keys that take a comma separated list
LIST_KEYS = {"preferred_times"}
INT_KEYS = {"consultation_fee", "duration_minutes", "amount"}


@dataclass
class ConsoleSession:
    actor: Actor = field(default_factory=lambda: Actor(Role.ADMIN, "a-001"))
    orchestrator: LifecycleOrchestrator = field(default_factory=LifecycleOrchestrator)


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or config.LOG_LEVEL).upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def parse_args(tokens: list[str]) -> dict:
    """Turn key=value tokens into a payload dict."""
    payload = {}
    for token in tokens:
        if "=" not in token:
            raise ValueError(f"Expected key=value, got '{token}'")
        key, value = token.split("=", 1)
        if key in LIST_KEYS:
            payload[key] = [v.strip() for v in value.split(",") if v.strip()]
        elif key in INT_KEYS:
            payload[key] = int(value)
        else:
            payload[key] = value
    return payload


def format_result(result: TransitionResult) -> str:
    lines = [f"Case `{result.case_id}` is **{result.case_status.value}** (version {result.version})"]
    if result.appointment_id:
        lines.append(f"Appointment `{result.appointment_id}` is **{result.appointment_status.value}**")
    if result.settlement:
        lines.append(
            f"Settled {format_minor_units(result.settlement.amount, result.settlement.currency)}"
            f" by {result.settlement.method}"
        )
    if result.reschedule_request:
        lines.append(
            f"Reschedule request `{result.reschedule_request.id}` is"
            f" **{result.reschedule_request.status.value}**"
        )
    text = "\n\n".join(lines)
    if result.events:
        text += "\n\n" + "\n".join(f"- {event.event_type.value} {event.payload}" for event in result.events)
    return text


def format_case_view(view: CaseView) -> str:
    case = view.case
    lines = [
        f"## Case {case.id}",
        f"- Status: **{case.status.value}** (version {case.version})",
        f"- Owner: {case.owner_patient_id}",
        f"- Doctor: {case.assigned_doctor_id or '-'}",
        f"- Urgency: {case.urgency_level}, complexity: {case.complexity}",
    ]
    if case.title:
        lines.append(f"- Title: {case.title}")
    if case.closure_reason or case.rejection_reason:
        lines.append(f"- Reason: {case.closure_reason or case.rejection_reason}")

    if view.appointment_history:
        lines.append("\n**Appointments**\n")
        for appointment in view.appointment_history:
            lines.append(
                f"- `{appointment.id}` {appointment.scheduled_time} {appointment.status.value}"
                f" ({format_minor_units(appointment.consultation_fee, appointment.currency)})"
            )
    if view.reschedule_requests:
        lines.append("\n**Reschedule requests**\n")
        for request in view.reschedule_requests:
            lines.append(f"- `{request.id}` {request.status.value}: {', '.join(request.preferred_times)}")
    if view.settlements:
        lines.append("\n**Payments**\n")
        for settlement in view.settlements:
            lines.append(
                f"- {settlement.method} {format_minor_units(settlement.amount, settlement.currency)}"
                f" {settlement.transaction_ref or settlement.coupon_code or ''}"
            )
    return "\n".join(lines)


def format_error(error: LifecycleError) -> str:
    details = ", ".join(f"{k}={v}" for k, v in error.details.items() if v not in (None, [], ""))
    text = f"**{error.code}**: {error.message}"
    return f"{text} ({details})" if details else text


def process_command(line: str, session: ConsoleSession) -> str:
    """Run one console command and return markdown to display."""
    tokens = shlex.split(line)
    if not tokens:
        return ""
    command, args = tokens[0].lower(), tokens[1:]
    orchestrator = session.orchestrator

    if command == "help":
        return HELP

    if command == "seed":
        case_ids = seed_database(orchestrator)
        return f"Seeded {len(case_ids)} cases: " + ", ".join(f"`{c}`" for c in case_ids)

    if command == "as":
        if len(args) < 2:
            return "Usage: `as <ROLE> <id> [patients=p-1,p-2]`"
        extra = parse_args(args[2:])
        patients = frozenset(p for p in extra.get("patients", "").split(",") if p)
        session.actor = Actor(Role(args[0].upper()), args[1], patient_ids=patients)
        return f"Acting as {session.actor.role.value} `{session.actor.id}`"

    if command == "submit":
        return format_result(orchestrator.submit_case(session.actor, parse_args(args)))

    if not args:
        return f"Usage: `{command} <case_id> [key=value ...]`"
    case_id, rest = args[0], args[1:]

    if command == "show":
        return format_case_view(orchestrator.get_case_view(case_id))

    if command == "intents":
        intents = orchestrator.available_intents(session.actor, case_id)
        return "Available: " + (", ".join(i.value.lower() for i in intents) or "nothing")

    if command == "quote":
        appointment = orchestrator.get_case_view(case_id).appointment
        if appointment is None:
            return "No appointment to quote"
        fee = compose_fee(appointment.consultation_fee, currency=appointment.currency)
        return (
            f"Consultation {format_minor_units(fee.consultation_fee, fee.currency)}"
            f" + platform {format_minor_units(fee.platform_fee, fee.currency)}"
            f" + processing {format_minor_units(fee.processing_fee, fee.currency)}"
            f" = **{format_minor_units(fee.total, fee.currency)}**"
        )

    try:
        intent = Intent(command.upper())
    except ValueError:
        return f"Unknown command '{command}'. Type `help`."
    return format_result(orchestrator.transition(case_id, session.actor, intent, parse_args(rest)))


def main():
    configure_logging()
    init_database()
    session = ConsoleSession()

    console.print("[bold blue]Consultation lifecycle console[/bold blue]")
    console.print("Type 'help' for commands, 'quit' to exit.\n")

    while True:
        try:
            line = console.input(
                f"[bold green]{session.actor.role.value.lower()}:{session.actor.id}>[/bold green] "
            ).strip()
        except (KeyboardInterrupt, EOFError):
            console.print("\n[bold blue]Goodbye![/bold blue]")
            break

        if line.lower() in ("quit", "exit"):
            console.print("[bold blue]Goodbye![/bold blue]")
            break

        try:
            output = process_command(line, session)
            if output:
                console.print(Markdown(output), "\n")
        except LifecycleError as e:
            console.print(Markdown(format_error(e)), "\n", style="red")
        except ValueError as e:
            console.print(f"[bold red]Error:[/bold red] {e}\n")


if __name__ == "__main__":
    main()
