import argparse
import json
import signal
import threading
from typing import Any

from .monitor.config import load_config
from .monitor.conversation_journal import read_conversation_journal
from .monitor.models import ConversationState
from .monitor.store import ContactStore
from .surface_client import SurfaceError, SurfaceSessionError


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False))


def cmd_run(args: argparse.Namespace) -> None:
    """Run the monitor loop until idle, cancelled, or the session is lost.

    Ctrl-C stops the loop at the next cycle boundary; an in-flight send finishes.

    Examples:

        python -m leadchat.cli run
        python -m leadchat.cli run --contact "Sami Ben Ali"
    """
    from .monitor.runner import run_loop

    stop_event = threading.Event()

    def request_stop(signum, frame) -> None:
        stop_event.set()

    previous = signal.signal(signal.SIGINT, request_stop)
    try:
        result = run_loop(initial_contact=args.contact, stop_event=stop_event)
    finally:
        signal.signal(signal.SIGINT, previous)
    print_json(result.to_dict())
    if result.reason.value == "session_error":
        raise SystemExit(f"Session problem: {result.error}")


def cmd_contacts(args: argparse.Namespace) -> None:
    """List tracked contacts and their conversation state."""
    cfg = load_config()
    store = ContactStore(cfg.state_db_path)
    state = ConversationState(args.state.upper()) if args.state else None
    rows = []
    for contact in store.list_contacts(cfg.account_id, state=state):
        rows.append(
            {
                "name": contact.name,
                "state": contact.state.value,
                "lead_stage": contact.lead_stage,
                "contact_info": contact.contact_info,
                "end_reason": contact.end_reason,
                "inbound": contact.fingerprint.inbound if contact.fingerprint else 0,
                "outbound": contact.fingerprint.outbound if contact.fingerprint else 0,
                "pending": bool(contact.pending_decision),
            }
        )
    print_json(rows)


def cmd_reset_contact(args: argparse.Namespace) -> None:
    cfg = load_config()
    removed = ContactStore(cfg.state_db_path).reset_contact(cfg.account_id, args.name)
    print_json({"name": args.name, "removed": removed})


def cmd_maintenance(args: argparse.Namespace) -> None:
    cfg = load_config()
    days = args.inactive_days if args.inactive_days is not None else cfg.inactive_days
    archived = ContactStore(cfg.state_db_path).archive_inactive(cfg.account_id, days)
    print_json({"archived": archived, "inactive_days": days})


def cmd_notifications(args: argparse.Namespace) -> None:
    cfg = load_config()
    print_json(ContactStore(cfg.state_db_path).list_notifications(cfg.account_id, limit=args.limit))


def cmd_journal(args: argparse.Namespace) -> None:
    print_json(read_conversation_journal(load_config().journal_path, limit=args.limit))


def cmd_add_lead(args: argparse.Namespace) -> None:
    """Register a lead so its post is used as context once the author replies.

    Example:

        python -m leadchat.cli add-lead \
          --author "Sami Ben Ali" \
          --post "Looking for someone to build an online store" \
          --service "E-commerce"
    """
    cfg = load_config()
    lead_id = ContactStore(cfg.state_db_path).add_lead(
        post_text=args.post,
        author_name=args.author,
        matched_service=args.service,
        group_name=args.group or "",
        posted_at=args.posted_at,
        account_id=cfg.account_id,
    )
    print_json({"lead_id": lead_id})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Conversation monitor and reply orchestrator for messenger leads.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    p_run = subparsers.add_parser("run", help="Run the monitor loop")
    p_run.add_argument("--contact", help="Contact to monitor from the first cycle")
    p_run.set_defaults(func=cmd_run)

    # contacts
    p_contacts = subparsers.add_parser("contacts", help="List tracked contacts")
    p_contacts.add_argument(
        "--state",
        choices=[s.value.lower() for s in ConversationState],
        help="Only show contacts in this state",
    )
    p_contacts.set_defaults(func=cmd_contacts)

    # reset-contact
    p_reset = subparsers.add_parser("reset-contact", help="Forget a contact's stored state")
    p_reset.add_argument("name", help="Contact display name")
    p_reset.set_defaults(func=cmd_reset_contact)

    # maintenance
    p_maint = subparsers.add_parser("maintenance", help="Archive inactive contacts")
    p_maint.add_argument("--inactive-days", type=int, help="Override LEADCHAT_INACTIVE_DAYS")
    p_maint.set_defaults(func=cmd_maintenance)

    # notifications
    p_notes = subparsers.add_parser("notifications", help="Show recent session problems")
    p_notes.add_argument("--limit", type=int, default=20)
    p_notes.set_defaults(func=cmd_notifications)

    # journal
    p_journal = subparsers.add_parser("journal", help="Show recently handled conversations")
    p_journal.add_argument("--limit", type=int, default=50)
    p_journal.set_defaults(func=cmd_journal)

    # add-lead
    p_lead = subparsers.add_parser("add-lead", help="Register a lead from a group post")
    p_lead.add_argument("--author", required=True, help="Post author's display name")
    p_lead.add_argument("--post", required=True, help="Text of the original post")
    p_lead.add_argument("--service", help="Matched service, e.g. 'E-commerce'")
    p_lead.add_argument("--group", help="Group the post was found in")
    p_lead.add_argument("--posted-at", help="When the post was published")
    p_lead.set_defaults(func=cmd_add_lead)

    return parser


def main() -> None:
    try:
        parser = build_parser()
        args = parser.parse_args()
        args.func(args)
    except SurfaceSessionError as e:
        raise SystemExit(f"Session problem: {e}")
    except SurfaceError as e:
        raise SystemExit(f"Surface error: {e}")
    except Exception as e:
        # Catch-all to avoid noisy tracebacks for common runtime issues
        raise SystemExit(f"Error: {e}")


if __name__ == "__main__":
    main()
