from xiaoji_booking.bind_codes import BindCodeService
from xiaoji_booking.cli import build_parser, run_cli
from xiaoji_booking.merchants import MerchantService
from xiaoji_booking.regions import RegionService


def _run(*argv):
    run_cli(build_parser().parse_args(list(argv)))


def test_bindcode_create_and_list(db, capsys):
    _run("bindcode", "create", "--description", "新老师")
    [record] = BindCodeService(db).list_bind_codes()
    assert record["code"] in capsys.readouterr().out

    _run("bindcode")
    out = capsys.readouterr().out
    assert "共 1 个，已使用 0 个，可用 1 个" in out


def test_bindcode_delete_used_reports_error(db, merchant, capsys):
    record = BindCodeService(db).get_bind_code(merchant["bind_code"])
    _run("bindcode", "delete", "--id", str(record["id"]))
    assert "绑定码已被使用，无法删除" in capsys.readouterr().out

    _run("bindcode", "delete", "--id", str(record["id"]), "--force")
    assert MerchantService(db).find_merchant(merchant["id"]) is None


def test_merchant_status_toggle(db, merchant, capsys):
    _run("merchant", "status", "--id", str(merchant["id"]))
    assert MerchantService(db).get_merchant(merchant["id"])["status"] == "suspended"
    _run("merchant", "status", "--id", str(merchant["id"]), "--status", "active")
    assert MerchantService(db).get_merchant(merchant["id"])["status"] == "active"


def test_region_add(db, capsys):
    _run("region", "add", "--name", "杭州", "--sort-order", "3")
    [region] = RegionService(db).list_regions()
    assert (region["name"], region["sort_order"]) == ("杭州", 3)


def test_export_commands(db, tmp_path, monkeypatch, capsys):
    import config as CFG

    monkeypatch.setattr(CFG, "EXPORT_DIR", str(tmp_path / "exports"))
    _run("export", "--format", "json")
    _run("export-cleanup", "--keep", "0")
    out = capsys.readouterr().out
    assert "export_" in out
    assert list((tmp_path / "exports").iterdir()) == []
