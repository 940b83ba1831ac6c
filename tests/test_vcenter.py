# tests/test_vcenter.py

from __future__ import annotations

from types import SimpleNamespace

import pytest
from pyVmomi import vim

from vmware_reports import vcenter
from vmware_reports.config import Settings
from vmware_reports.errors import ConfigError, SetupError


def test_connect_failure_is_setup_error(monkeypatch):
    def refuse(**kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr(vcenter.connect, "SmartConnect", refuse)

    with pytest.raises(SetupError, match="vc1.example.com"):
        vcenter.connect_to_vcenter("vc1.example.com", "admin", "secret")


def test_connect_registers_disconnect(monkeypatch):
    registered = []
    seen = {}

    def smart_connect(**kwargs):
        seen.update(kwargs)
        return "si"

    monkeypatch.setattr(vcenter.connect, "SmartConnect", smart_connect)
    monkeypatch.setattr(vcenter.atexit, "register", lambda *args: registered.append(args))

    assert vcenter.connect_to_vcenter("vc1", "admin", "secret", 8443, disable_ssl=True) == "si"
    assert seen["port"] == 8443
    assert seen["sslContext"].check_hostname is False
    assert registered == [(vcenter._disconnect, "si", "vc1")]


def test_connect_all(monkeypatch):
    monkeypatch.setattr(vcenter, "connect_to_vcenter", lambda host, *args: f"si-{host}")
    settings = Settings(vc_hosts=["vc1", "vc2"], vc_user="admin", vc_password="secret")

    assert vcenter.connect_all(settings) == {"vc1": "si-vc1", "vc2": "si-vc2"}
    with pytest.raises(ConfigError):
        vcenter.connect_all(Settings())


def test_vm_by_moref():
    vm = vcenter.vm_by_moref(SimpleNamespace(_stub=None), "vm-42")

    assert vm._moId == "vm-42"


def test_fault_message():
    localized = SimpleNamespace(faultMessage=[SimpleNamespace(message="no access")])

    assert vcenter._fault_message(localized) == "no access"
    assert vcenter._fault_message(SimpleNamespace(msg="denied")) == "denied"
    assert vcenter._fault_message(SimpleNamespace()) == "N/A"


def _prop(name, val):
    return SimpleNamespace(name=name, val=val)


def _fake_si(collector):
    destroyed = []

    class FakeView(vim.view.ContainerView):
        def Destroy(self):
            destroyed.append(self)

    view = FakeView("session[1]view-1")
    content = SimpleNamespace(
        rootFolder=vim.Folder("group-d1"),
        viewManager=SimpleNamespace(CreateContainerView=lambda container, types, recursive: view),
        propertyCollector=collector,
    )
    return SimpleNamespace(RetrieveContent=lambda: content), destroyed


class PagedCollector:
    def __init__(self, pages):
        self.pages = pages
        self.tokens = []

    def RetrievePropertiesEx(self, specSet, options):
        return self.pages[0]

    def ContinueRetrievePropertiesEx(self, token):
        self.tokens.append(token)
        return self.pages[len(self.tokens)]


def test_collect_properties_follows_token_and_fills_missing():
    denied = SimpleNamespace(path="guest.ipAddress", fault=SimpleNamespace(msg="denied"))
    first = SimpleNamespace(token="t1", objects=[
        SimpleNamespace(obj="vm-1", propSet=[_prop("name", "web")], missingSet=[denied]),
    ])
    second = SimpleNamespace(token=None, objects=[
        SimpleNamespace(obj="vm-2", propSet=[_prop("name", "db"), _prop("guest.ipAddress", "10.0.0.2")],
                        missingSet=[]),
    ])
    collector = PagedCollector([first, second])
    si, destroyed = _fake_si(collector)

    rows = vcenter.collect_properties(si, vim.VirtualMachine, ["name", "guest.ipAddress"])

    assert rows == [
        {"obj": "vm-1", "name": "web", "guest.ipAddress": None},
        {"obj": "vm-2", "name": "db", "guest.ipAddress": "10.0.0.2"},
    ]
    assert collector.tokens == ["t1"]
    assert len(destroyed) == 1


def test_collect_properties_destroys_view_on_error():
    class FailingCollector:
        def RetrievePropertiesEx(self, specSet, options):
            raise RuntimeError("session expired")

    si, destroyed = _fake_si(FailingCollector())

    with pytest.raises(RuntimeError, match="session expired"):
        vcenter.collect_properties(si, vim.VirtualMachine, ["name"])
    assert len(destroyed) == 1
