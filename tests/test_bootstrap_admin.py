from sportauth.bootstrap_admin import bootstrap_admin, main
from sportauth.service.runtime import get_runtime

PASSWORD = "Str0ngPassw0rd"


async def test_creates_admin_account():
    result = await bootstrap_admin("root@example.com", PASSWORD, username="root_admin")
    assert result["status"] == "created"
    account = get_runtime().store.get_account(result["account_id"])
    assert account.role == "admin"
    assert get_runtime().store.get_profile(account.id).username == "root_admin"


async def test_promotes_then_reports_existing_admin():
    registered = await get_runtime().auth.register("coach@example.com", PASSWORD, username="coach")
    account_id = registered.value.account.id

    dry = await bootstrap_admin("coach@example.com", PASSWORD, dry_run=True)
    assert dry["status"] == "dry_run"
    assert get_runtime().store.get_account(account_id).role == "user"

    assert (await bootstrap_admin("coach@example.com", PASSWORD))["status"] == "promoted"
    assert (await bootstrap_admin("coach@example.com", PASSWORD))["status"] == "already_admin"


def test_cli_rejects_weak_password(capsys):
    assert main(["--email", "root@example.com", "--password", "weak"]) == 1
    out = capsys.readouterr().out
    assert "Password does not meet requirements" in out
    assert "uppercase" in out


def test_cli_requires_email(capsys, monkeypatch):
    monkeypatch.delenv("ADMIN_EMAIL", raising=False)
    assert main(["--password", PASSWORD]) == 1
    assert "--email" in capsys.readouterr().out
