"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from ..banking import PaymentFileService
from ..claims import (
    ClaimBatcher,
    create_lodgement_batch,
    record_claim_outcome,
    submit_claims,
    submit_lodgement_batch,
)
from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..errors import NdisClaimsError
from ..extractors import InvoiceTextExtractor, load_textract_file
from ..schemas.money import format_aud
from ..services import InvoiceIntakeService
from ..state_store import ClaimStatus, StateStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _id_list(value: str) -> list[int]:
    """Parse "1,2,3" into [1, 2, 3]."""
    try:
        return [int(part) for part in value.split(",") if part.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected comma-separated ids, got {value!r}") from None


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ndis-claims",
        description="Turn NDIS provider invoices into claims and ABA payment files",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--user",
        type=str,
        default="cli",
        help="Acting user id recorded in the audit log (default: cli)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-config command
    subparsers.add_parser("init-config", help="Write a default config file")

    # extract command
    extract_parser = subparsers.add_parser(
        "extract", help="Extract invoice fields from a Textract JSON file (no storage)"
    )
    extract_parser.add_argument("textract_file", type=Path, help="Textract response JSON")

    # ingest command
    ingest_parser = subparsers.add_parser(
        "ingest", help="Extract, auto-match and store an invoice for review"
    )
    ingest_parser.add_argument("textract_file", type=Path, help="Textract response JSON")
    ingest_parser.add_argument("--sender", type=str, help="Sender email address")

    # approve command
    approve_parser = subparsers.add_parser("approve", help="Approve or reject a reviewed invoice")
    approve_parser.add_argument("invoice_id", type=int)
    approve_parser.add_argument("--provider", type=int, help="Confirmed provider id")
    approve_parser.add_argument("--participant", type=int, help="Confirmed participant id")
    approve_parser.add_argument("--reject", type=str, metavar="REASON", help="Reject instead")

    # claim command
    claim_parser = subparsers.add_parser("claim", help="Generate claims from approved invoices")
    claim_parser.add_argument("invoice_ids", type=_id_list, help="Comma-separated invoice ids")

    # lodge command
    lodge_parser = subparsers.add_parser("lodge", help="Mark pending claims as submitted")
    lodge_parser.add_argument("claim_ids", type=_id_list, help="Comma-separated claim ids")

    # batch commands
    batch_parser = subparsers.add_parser("batch", help="Group pending claims into a draft batch")
    batch_parser.add_argument("claim_ids", type=_id_list, help="Comma-separated claim ids")
    batch_parser.add_argument("--notes", help="Free-text notes")

    lodge_batch_parser = subparsers.add_parser(
        "lodge-batch", help="Submit a draft batch and its pending claims"
    )
    lodge_batch_parser.add_argument("batch_id", type=int)
    lodge_batch_parser.add_argument("--agency-batch-id", help="Batch id issued by the agency")

    # outcome command
    outcome_parser = subparsers.add_parser("outcome", help="Record a claim's assessed outcome")
    outcome_parser.add_argument("claim_id", type=int)
    outcome_parser.add_argument(
        "--status",
        required=True,
        choices=[ClaimStatus.APPROVED.value, ClaimStatus.PARTIAL.value, ClaimStatus.REJECTED.value],
    )
    outcome_parser.add_argument("--approved-cents", type=int, default=0)

    # payments command
    payments_parser = subparsers.add_parser(
        "payments", help="Create payments for approved claims from provider bank details"
    )
    payments_parser.add_argument("claim_ids", type=_id_list, help="Comma-separated claim ids")

    # aba command
    aba_parser = subparsers.add_parser("aba", help="Generate an ABA file from pending payments")
    aba_parser.add_argument("payment_ids", type=_id_list, help="Comma-separated payment ids")
    aba_parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("."),
        help="Directory to write the file to (default: current directory)",
    )

    # submit command
    submit_parser = subparsers.add_parser("submit", help="Mark an ABA file as submitted to the bank")
    submit_parser.add_argument("aba_file_id", type=int)
    submit_parser.add_argument("--bank-reference", type=str, required=True)

    # reconcile command
    reconcile_parser = subparsers.add_parser("reconcile", help="Mark payments as cleared")
    reconcile_parser.add_argument("payment_ids", type=_id_list, help="Comma-separated payment ids")

    # status command
    subparsers.add_parser("status", help="Show pipeline status and statistics")

    return parser


def cmd_init_config(config_path: Path) -> int:
    """Write a default config file."""
    if config_path.exists():
        print(f"❌ {config_path} already exists")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote {config_path}")
    return 0


def cmd_extract(config: Config, textract_file: Path) -> int:
    """Print the extracted fields as JSON."""
    extractor = InvoiceTextExtractor(max_quantity=config.extraction.max_quantity)
    extracted = extractor.extract(load_textract_file(textract_file))
    print(json.dumps(extracted.to_dict(), indent=2))
    return 0


def cmd_ingest(config: Config, textract_file: Path, sender: str | None) -> int:
    """Ingest one invoice."""
    store = StateStore(config.state_db_path)
    service = InvoiceIntakeService(store, config)
    result = service.ingest(load_textract_file(textract_file), source_email=sender)

    extracted = result.extracted
    match = result.match
    print(f"📄 Invoice {result.invoice_id} stored for review")
    print(f"     → Number: {extracted.invoice_number or '-'}")
    print(f"     → Date: {extracted.invoice_date or '-'}")
    total = format_aud(extracted.total_cents) if extracted.total_cents is not None else "-"
    print(f"     → Total: {total}")
    print(f"     → Lines: {len(extracted.line_items)}")
    print(f"     → OCR confidence: {extracted.confidence:.0%}")
    print(f"     → Provider: {match.provider_match_detail}")
    print(f"     → Participant: {match.participant_match_detail}")
    print(f"     → Match: {match.match_method.value} ({match.match_confidence:.0%})")
    return 0


def cmd_approve(
    config: Config,
    user_id: str,
    invoice_id: int,
    provider_id: int | None,
    participant_id: int | None,
    reject_reason: str | None,
) -> int:
    """Approve or reject an invoice."""
    store = StateStore(config.state_db_path)
    service = InvoiceIntakeService(store, config)

    if reject_reason is not None:
        service.reject_invoice(invoice_id, reject_reason, user_id)
        print(f"✓ Invoice {invoice_id} rejected")
        return 0

    if provider_id is None or participant_id is None:
        print("❌ --provider and --participant are required to approve")
        return 1

    outcome = service.confirm_invoice(invoice_id, provider_id, participant_id, user_id)
    print(f"✓ Invoice {invoice_id} approved")
    if outcome is not None:
        print(f"     → Sender address: {outcome.value}")
    return 0


def cmd_claim(config: Config, user_id: str, invoice_ids: list[int]) -> int:
    """Generate claims."""
    store = StateStore(config.state_db_path)
    result = ClaimBatcher(store).generate_claim_batch(invoice_ids, user_id)

    for entry in result.claims:
        print(
            f"  🧾 {entry.claim_reference}  invoice {entry.invoice_id}  "
            f"{format_aud(entry.total_cents)}  ({entry.line_count} line(s))"
        )
    print(f"\n✓ Invoices processed: {result.invoices_processed}, claims: {len(result.claims)}")
    return 0


def cmd_lodge(config: Config, user_id: str, claim_ids: list[int]) -> int:
    """Mark claims as submitted."""
    store = StateStore(config.state_db_path)
    moved = submit_claims(store, claim_ids, user_id)
    print(f"✓ Submitted {moved} claim(s)")
    return 0


def cmd_batch(config: Config, user_id: str, claim_ids: list[int], notes: str | None) -> int:
    """Create a lodgement batch."""
    store = StateStore(config.state_db_path)
    batch = create_lodgement_batch(store, claim_ids, user_id, notes)
    print(
        f"✓ {batch.batch_number} (id {batch.id}): {batch.claim_count} claim(s), "
        f"{format_aud(batch.total_cents)}"
    )
    return 0


def cmd_lodge_batch(
    config: Config, user_id: str, batch_id: int, agency_batch_id: str | None
) -> int:
    """Submit a lodgement batch."""
    store = StateStore(config.state_db_path)
    batch = submit_lodgement_batch(store, batch_id, user_id, agency_batch_id)
    print(f"✓ {batch.batch_number}: {batch.status.value}")
    return 0


def cmd_outcome(
    config: Config, user_id: str, claim_id: int, status: str, approved_cents: int
) -> int:
    """Record a claim outcome."""
    store = StateStore(config.state_db_path)
    claim = record_claim_outcome(store, claim_id, ClaimStatus(status), approved_cents, user_id)
    print(f"✓ {claim.claim_reference}: {claim.status.value} {format_aud(claim.approved_cents)}")
    return 0


def cmd_payments(config: Config, user_id: str, claim_ids: list[int]) -> int:
    """Create payments from approved claims."""
    store = StateStore(config.state_db_path)
    service = PaymentFileService(store, config.banking)
    created = service.create_payments_from_claims(claim_ids, user_id)
    print(f"✓ Created {len(created)} payment(s): {', '.join(map(str, created)) or '-'}")
    return 0


def cmd_aba(config: Config, user_id: str, payment_ids: list[int], output_dir: Path) -> int:
    """Generate an ABA file and write it to disk."""
    store = StateStore(config.state_db_path)
    service = PaymentFileService(store, config.banking)
    generated = service.generate_aba_file(payment_ids, user_id)

    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / generated.filename
    # newline="" keeps the CRLF record separators byte-exact
    with open(path, "w", encoding="ascii", errors="replace", newline="") as f:
        f.write(generated.content)

    aba_file = generated.aba_file
    print(f"🏦 {generated.filename} (file {aba_file.id})")
    print(f"     → Payments: {aba_file.payment_count}")
    print(f"     → Total: {format_aud(aba_file.total_cents)}")
    print(f"     → Written to: {path}")
    return 0


def cmd_submit(config: Config, user_id: str, aba_file_id: int, bank_reference: str) -> int:
    """Mark an ABA file as submitted."""
    store = StateStore(config.state_db_path)
    service = PaymentFileService(store, config.banking)
    aba_file = service.mark_submitted(aba_file_id, bank_reference, user_id)
    print(f"✓ {aba_file.filename} submitted (bank reference {aba_file.bank_reference})")
    return 0


def cmd_reconcile(config: Config, user_id: str, payment_ids: list[int]) -> int:
    """Mark payments as cleared."""
    store = StateStore(config.state_db_path)
    service = PaymentFileService(store, config.banking)
    result = service.reconcile_payments(payment_ids, user_id)

    print("\n📊 Reconciliation Results")
    print("=" * 40)
    print(f"  Payments cleared:  {result.payments_cleared}")
    print(f"  Claims paid:       {len(result.claim_ids)}")
    print(f"  Invoices paid:     {len(result.invoice_ids)}")
    print(f"  ABA files cleared: {result.aba_files_cleared}")
    print()
    return 0


def cmd_status(config: Config) -> int:
    """Show pipeline status."""
    store = StateStore(config.state_db_path)
    stats = store.get_stats()

    print("\n📊 Pipeline Status")
    print("=" * 40)
    for section in ("invoices", "claims", "payments"):
        counts = stats[section]
        print(f"  {section.capitalize()}:")
        if not counts:
            print("    (none)")
        for status, count in sorted(counts.items()):
            print(f"    {status:<20} {count}")
    print(f"  ABA files:              {stats['aba_files']}")
    print()

    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config)

    # Load config
    try:
        config = load_config(parsed.config)
    except (OSError, ValueError, ConfigValidationError) as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    errors = config.validate()
    if errors:
        for error in errors:
            print(f"❌ {error}")
        return 1

    user_id = parsed.user

    # Route to command
    try:
        if parsed.command == "extract":
            return cmd_extract(config, parsed.textract_file)
        elif parsed.command == "ingest":
            return cmd_ingest(config, parsed.textract_file, parsed.sender)
        elif parsed.command == "approve":
            return cmd_approve(
                config, user_id, parsed.invoice_id, parsed.provider, parsed.participant, parsed.reject
            )
        elif parsed.command == "claim":
            return cmd_claim(config, user_id, parsed.invoice_ids)
        elif parsed.command == "lodge":
            return cmd_lodge(config, user_id, parsed.claim_ids)
        elif parsed.command == "batch":
            return cmd_batch(config, user_id, parsed.claim_ids, parsed.notes)
        elif parsed.command == "lodge-batch":
            return cmd_lodge_batch(config, user_id, parsed.batch_id, parsed.agency_batch_id)
        elif parsed.command == "outcome":
            return cmd_outcome(
                config, user_id, parsed.claim_id, parsed.status, parsed.approved_cents
            )
        elif parsed.command == "payments":
            return cmd_payments(config, user_id, parsed.claim_ids)
        elif parsed.command == "aba":
            return cmd_aba(config, user_id, parsed.payment_ids, parsed.output_dir)
        elif parsed.command == "submit":
            return cmd_submit(config, user_id, parsed.aba_file_id, parsed.bank_reference)
        elif parsed.command == "reconcile":
            return cmd_reconcile(config, user_id, parsed.payment_ids)
        elif parsed.command == "status":
            return cmd_status(config)
        else:
            parser.print_help()
            return 1
    except NdisClaimsError as e:
        print(f"❌ {e}")
        return 1
    except (OSError, json.JSONDecodeError) as e:
        logger.debug("Command %s failed", parsed.command, exc_info=True)
        print(f"❌ {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
