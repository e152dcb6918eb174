"""
RentalSync CLI

Commands:
  serve           - Run the trigger server
  init-db         - Create the database schema
  add-tenant      - Register a tenant
  set-config      - Store a tenant's telemetry or gateway settings
  reconcile       - Reconcile one tenant against the telemetry provider
  bill            - Run the billing cycle for one tenant
  sync-invoices   - Apply gateway invoice status to local invoices
  test-connection - Check telemetry or gateway credentials
  send-command    - Block or unblock a tracker
  run-all         - Run jobs for every active tenant
  retry-charges   - Retry gateway charges for invoices that never got one
  logs            - Show a tenant's integration log
  export          - Export customers, vehicles or invoices as CSV/JSON
  delete-vehicles - Delete every vehicle of a tenant
"""

import argparse
import json
import os
import sys
from datetime import date


def cmd_serve(args):
    """Run the trigger server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting RentalSync on {host}:{port}")

    uvicorn.run(
        "rentalsync.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_init_db(args):
    """Create the database schema."""
    from .persistence.database import get_database

    db = get_database()
    print(f"Schema ready ({'PostgreSQL' if db.is_postgres else 'SQLite'})")


def cmd_add_tenant(args):
    """Register a tenant."""
    from .core.errors import StoreConflict
    from .persistence.models import TenantRecord
    from .persistence.repository import TenantRepository

    try:
        TenantRepository().create(TenantRecord(id=args.tenant_id, name=args.name))
    except StoreConflict:
        print(f"Error: tenant {args.tenant_id} already exists")
        sys.exit(1)
    print(f"Tenant created: {args.tenant_id}")


def cmd_set_config(args):
    """Store a tenant's telemetry or gateway settings."""
    from .config import get_settings
    from .core.credentials import CredentialVault
    from .persistence.repository import TenantConfigRepository

    with open(args.json_file, "r", encoding="utf-8") as f:
        value = json.load(f)
    if not isinstance(value, dict):
        print("Error: config file must hold a JSON object")
        sys.exit(1)

    if args.cert:
        with open(args.cert, "r", encoding="utf-8") as f:
            value["certificate_pem"] = f.read()
    if args.private_key:
        with open(args.private_key, "r", encoding="utf-8") as f:
            value["private_key_pem"] = f.read()

    repo = TenantConfigRepository(vault=CredentialVault(get_settings().key_master_secret))
    repo.set(args.tenant_id, args.key, value)
    print(f"Saved {args.key} config for {args.tenant_id}")


def _print_result(result):
    print(json.dumps({"status_code": result.status_code, **result.to_dict(), "details": result.details},
                     indent=2, default=str))
    if result.status_code >= 400:
        sys.exit(1)


def cmd_reconcile(args):
    """Reconcile one tenant."""
    from .scheduler import TriggerService

    _print_result(TriggerService().run(args.tenant_id, "reconcile", force=args.force))


def cmd_bill(args):
    """Run the billing cycle for one tenant."""
    from .scheduler import TriggerService

    today = date.fromisoformat(args.today) if args.today else None
    _print_result(TriggerService().run(args.tenant_id, "bill", today=today))


def cmd_sync_invoices(args):
    """Apply gateway invoice status to local invoices."""
    from .scheduler import TriggerService

    today = date.fromisoformat(args.today) if args.today else None
    _print_result(TriggerService().run(args.tenant_id, "sync_invoices", today=today))


def _print_operation(result):
    print(json.dumps({"status_code": result.status_code, **result.body}, indent=2, default=str))
    if result.status_code >= 400:
        sys.exit(1)


def cmd_test_connection(args):
    """Check a tenant's telemetry or gateway credentials."""
    from .scheduler import TriggerService

    _print_operation(TriggerService().test_connection(args.tenant_id, args.service))


def cmd_send_command(args):
    """Block or unblock a tracker."""
    from .scheduler import TriggerService

    _print_operation(TriggerService().send_command(args.tenant_id, args.device_id, args.device_command))


def cmd_run_all(args):
    """Run jobs for every active tenant."""
    from .scheduler import TriggerService

    results = TriggerService().run_all(args.action, force=args.force)
    for tenant_id, result in results.items():
        print(f"{tenant_id}: {result.status_code} {json.dumps(result.to_dict())}")


def cmd_retry_charges(args):
    """Retry gateway charges for pending invoices without one."""
    from .billing.cycle import BillingCycleEngine
    from .core.errors import ConfigMissing

    try:
        summary = BillingCycleEngine().retry_pending_charges(args.tenant_id)
    except ConfigMissing as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(json.dumps(summary.to_dict(), indent=2))


def cmd_logs(args):
    """Show a tenant's integration log."""
    from .persistence.repository import IntegrationLogRepository

    entries = IntegrationLogRepository().list_for_tenant(args.tenant_id, service=args.service, limit=args.limit)
    for entry in entries:
        line = f"{entry.created_at}  {entry.service:<10} {entry.operation:<16} {entry.status}"
        if entry.error_message:
            line += f"  {entry.error_message}"
        print(line)


def cmd_export(args):
    """Export records as CSV or JSON."""
    from .export import render_records
    from .persistence.repository import CustomerRepository, InvoiceRepository, VehicleRepository

    sources = {
        "customers": CustomerRepository,
        "vehicles": VehicleRepository,
        "invoices": InvoiceRepository,
    }
    records = [r.to_dict() for r in sources[args.record_type]().list_for_tenant(args.tenant_id)]
    fields = [f.strip() for f in args.fields.split(",") if f.strip()] if args.fields else []

    try:
        payload = render_records(args.record_type, records, fields, args.format)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.output:
        with open(args.output, "wb") as f:
            f.write(payload)
        print(f"Wrote {len(records)} {args.record_type} to {args.output}")
    else:
        sys.stdout.write(payload.decode("utf-8"))


def cmd_delete_vehicles(args):
    """Delete every vehicle of a tenant."""
    from .persistence.repository import TenantRepository, VehicleRepository

    if not args.yes:
        print("Error: pass --yes to confirm the bulk delete")
        sys.exit(1)
    if TenantRepository().get(args.tenant_id) is None:
        print(f"Error: unknown tenant {args.tenant_id}")
        sys.exit(1)
    deleted = VehicleRepository().delete_all(args.tenant_id)
    print(f"Deleted {deleted} vehicles for {args.tenant_id}")


def main():
    parser = argparse.ArgumentParser(
        description="RentalSync - telemetry reconciliation and recurring billing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # init-db
    subparsers.add_parser("init-db", help="Create the database schema")

    # add-tenant
    tenant_parser = subparsers.add_parser("add-tenant", help="Register a tenant")
    tenant_parser.add_argument("tenant_id")
    tenant_parser.add_argument("name")

    # set-config
    config_parser = subparsers.add_parser("set-config", help="Store tenant settings")
    config_parser.add_argument("tenant_id")
    config_parser.add_argument("key", choices=["telemetry", "gateway"])
    config_parser.add_argument("json_file", help="JSON object with the settings")
    config_parser.add_argument("--cert", help="Client certificate PEM file (gateway)")
    config_parser.add_argument("--key", dest="private_key", help="Client private key PEM file (gateway)")

    # reconcile
    reconcile_parser = subparsers.add_parser("reconcile", help="Reconcile one tenant")
    reconcile_parser.add_argument("tenant_id")
    reconcile_parser.add_argument("--force", action="store_true", help="Ignore the minimum sync interval")

    # bill
    bill_parser = subparsers.add_parser("bill", help="Run the billing cycle")
    bill_parser.add_argument("tenant_id")
    bill_parser.add_argument("--today", help="Billing date (YYYY-MM-DD), defaults to today")

    # sync-invoices
    sync_parser = subparsers.add_parser("sync-invoices", help="Poll gateway invoice status")
    sync_parser.add_argument("tenant_id")
    sync_parser.add_argument("--today", help="Window end (YYYY-MM-DD), defaults to today")

    # test-connection
    test_parser = subparsers.add_parser("test-connection", help="Check provider credentials")
    test_parser.add_argument("tenant_id")
    test_parser.add_argument("service", choices=["telemetry", "gateway"])

    # send-command
    command_parser = subparsers.add_parser("send-command", help="Block or unblock a tracker")
    command_parser.add_argument("tenant_id")
    command_parser.add_argument("device_id")
    command_parser.add_argument("device_command", choices=["block", "unblock"])

    # run-all
    all_parser = subparsers.add_parser("run-all", help="Run every active tenant")
    all_parser.add_argument("--action", choices=["reconcile", "bill", "both", "sync_invoices"], default="both")
    all_parser.add_argument("--force", action="store_true")

    # retry-charges
    retry_parser = subparsers.add_parser("retry-charges", help="Retry missing gateway charges")
    retry_parser.add_argument("tenant_id")

    # logs
    logs_parser = subparsers.add_parser("logs", help="Show integration log")
    logs_parser.add_argument("tenant_id")
    logs_parser.add_argument("--service")
    logs_parser.add_argument("--limit", type=int, default=50)

    # export
    export_parser = subparsers.add_parser("export", help="Export records")
    export_parser.add_argument("tenant_id")
    export_parser.add_argument("record_type", choices=["customers", "vehicles", "invoices"])
    export_parser.add_argument("--fields", help="Comma-separated field names")
    export_parser.add_argument("--format", default="csv", help="csv or json")
    export_parser.add_argument("--output", help="Write to file instead of stdout")

    # delete-vehicles
    delete_parser = subparsers.add_parser("delete-vehicles", help="Bulk delete a tenant's vehicles")
    delete_parser.add_argument("tenant_id")
    delete_parser.add_argument("--yes", action="store_true", help="Confirm")

    args = parser.parse_args()

    commands = {
        "serve": cmd_serve,
        "init-db": cmd_init_db,
        "add-tenant": cmd_add_tenant,
        "set-config": cmd_set_config,
        "reconcile": cmd_reconcile,
        "bill": cmd_bill,
        "sync-invoices": cmd_sync_invoices,
        "test-connection": cmd_test_connection,
        "send-command": cmd_send_command,
        "run-all": cmd_run_all,
        "retry-charges": cmd_retry_charges,
        "logs": cmd_logs,
        "export": cmd_export,
        "delete-vehicles": cmd_delete_vehicles,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
    else:
        command(args)


if __name__ == "__main__":
    main()
