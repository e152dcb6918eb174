"""
Tests for the CLI
"""

import json
import sys

import pytest

from conftest import TENANT_ID, add_customer
from rentalsync import cli
from rentalsync.persistence.repository import TenantConfigRepository, TenantRepository


def run_cli(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["rentalsync", *argv])
    cli.main()


class TestTenantCommands:

    def test_add_tenant(self, db, monkeypatch, capsys):
        run_cli(monkeypatch, "add-tenant", "tenant-9", "Locadora Nove")

        assert TenantRepository(db).get("tenant-9").name == "Locadora Nove"
        assert "tenant-9" in capsys.readouterr().out

    def test_add_tenant_twice(self, db, monkeypatch, tenant):
        with pytest.raises(SystemExit):
            run_cli(monkeypatch, "add-tenant", TENANT_ID, "Again")

    def test_set_config_reads_pem_files(self, db, vault, tenant, monkeypatch, tmp_path, cert_pems):
        config_file = tmp_path / "gateway.json"
        config_file.write_text(json.dumps({"client_id": "int-client-123", "account_id": "acct-42"}))
        cert_file = tmp_path / "client.crt"
        cert_file.write_text(cert_pems[0])
        key_file = tmp_path / "client.key"
        key_file.write_text(cert_pems[1])

        run_cli(monkeypatch, "set-config", TENANT_ID, "gateway", str(config_file),
                "--cert", str(cert_file), "--key", str(key_file))

        stored = TenantConfigRepository(db, vault).get(TENANT_ID, "gateway")
        assert stored["private_key_pem"] == cert_pems[1]
        assert stored["client_id"] == "int-client-123"


class TestJobCommands:

    def test_reconcile_unconfigured_tenant(self, db, tenant, monkeypatch, capsys):
        run_cli(monkeypatch, "reconcile", TENANT_ID)

        output = json.loads(capsys.readouterr().out)
        assert output["status_code"] == 200
        assert output["skipped"] == 1

    def test_bill_unknown_tenant_exits(self, db, monkeypatch):
        with pytest.raises(SystemExit):
            run_cli(monkeypatch, "bill", "nobody", "--today", "2025-01-10")

    def test_sync_invoices_unconfigured_tenant(self, db, tenant, monkeypatch, capsys):
        run_cli(monkeypatch, "sync-invoices", TENANT_ID, "--today", "2025-01-10")

        output = json.loads(capsys.readouterr().out)
        assert output["status_code"] == 200
        assert output["skipped"] == 1


class TestOperatorCommands:

    def test_connection_without_gateway_config(self, db, tenant, monkeypatch, capsys):
        with pytest.raises(SystemExit):
            run_cli(monkeypatch, "test-connection", TENANT_ID, "gateway")

        output = json.loads(capsys.readouterr().out)
        assert output["status_code"] == 400
        assert output["success"] is False

    def test_send_command_rejects_unknown_command(self, db, tenant, monkeypatch):
        with pytest.raises(SystemExit):
            run_cli(monkeypatch, "send-command", TENANT_ID, "9001", "explode")


class TestExportCommand:

    def test_export_csv_to_stdout(self, db, tenant, monkeypatch, capsys):
        add_customer(db, external_id="p-1", name="Maria Silva")

        run_cli(monkeypatch, "export", TENANT_ID, "customers", "--fields", "external_id,name")

        assert capsys.readouterr().out.splitlines() == ["external_id,name", "p-1,Maria Silva"]

    def test_export_json_file(self, db, tenant, monkeypatch, tmp_path):
        add_customer(db)
        target = tmp_path / "customers.json"

        run_cli(monkeypatch, "export", TENANT_ID, "customers", "--format", "json", "--output", str(target))

        data = json.loads(target.read_text())
        assert data["record_type"] == "customers"
        assert len(data["records"]) == 1

    def test_delete_vehicles_requires_confirmation(self, db, tenant, monkeypatch):
        with pytest.raises(SystemExit):
            run_cli(monkeypatch, "delete-vehicles", TENANT_ID)
