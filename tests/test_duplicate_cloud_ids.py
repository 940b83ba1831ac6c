# tests/test_duplicate_cloud_ids.py

from __future__ import annotations

import csv

from pyVmomi import vim

from vmware_reports import duplicate_cloud_ids as dup
from vmware_reports.config import Settings


def _vm(name, cloud_id=None, vcenter="vc1", key="cloud.uuid"):
    extra = [vim.option.OptionValue(key="tools.syncTime", value="FALSE")]
    if cloud_id is not None:
        extra.append(vim.option.OptionValue(key=key, value=cloud_id))
    return {
        "name": name,
        "vcenter": vcenter,
        "config.extraConfig": extra,
        "config.instanceUuid": f"uuid-{name}",
        "runtime.powerState": "poweredOn",
        "summary.config.vmPathName": f"[ds1] {name}/{name}.vmx",
    }


def test_cloud_id_of():
    assert dup.cloud_id_of(_vm("a", "abc")["config.extraConfig"]) == "abc"
    assert dup.cloud_id_of(_vm("a")["config.extraConfig"]) is None
    assert dup.cloud_id_of(_vm("a", "  ")["config.extraConfig"]) is None
    assert dup.cloud_id_of(None) is None


def test_find_duplicates_across_vcenters():
    records = [
        _vm("web01", "id-1", "vc1"),
        _vm("web01-copy", "id-1", "vc2"),
        _vm("db01", "id-2"),
        _vm("nocloud"),
        _vm("nocloud2"),
    ]

    rows = dup.find_duplicates(records)

    assert [(r["vm_name"], r["vcenter"]) for r in rows] == [("web01", "vc1"), ("web01-copy", "vc2")]
    assert {r["count"] for r in rows} == {2}
    assert rows[0]["instance_uuid"] == "uuid-web01"


def test_find_duplicates_with_custom_key():
    records = [_vm("a", "x", key="vcd.id"), _vm("b", "x", key="vcd.id")]

    assert dup.find_duplicates(records) == []
    assert len(dup.find_duplicates(records, key="vcd.id")) == 2


def test_main_writes_report(monkeypatch, clean_env):
    monkeypatch.setattr(dup, "load_settings", lambda env_file=None: Settings(output_dir=str(clean_env)))
    monkeypatch.setattr(dup, "connect_all", lambda settings: {"vc1": object()})
    monkeypatch.setattr(dup, "collect_properties",
                        lambda si, obj_type, props: [_vm("a", "same"), _vm("b", "same"), _vm("c", "other")])
    out = clean_env / "dups.csv"

    assert dup.main(["--output", str(out)]) == 0

    with open(out, newline="") as f:
        rows = list(csv.DictReader(f))
    assert [r["vm_name"] for r in rows] == ["a", "b"]
    assert rows[0]["cloud_id"] == "same"


def test_main_setup_error_is_fatal(monkeypatch, clean_env):
    # no VCENTER_HOSTS / VCENTER_USER configured
    assert dup.main([]) == 1
