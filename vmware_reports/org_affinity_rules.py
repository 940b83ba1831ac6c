"""List the DRS rules that apply to the VMs of a vCloud Director organization.

The organization's VMs come from vCloud Director; each one is then looked up
in its backing vCenter and matched against the rules of the cluster it runs
on. One lookup per VM is dispatched through the parallel runner.
"""
import logging
import sys
from dataclasses import dataclass, field

import requests
from pyVmomi import vim, vmodl

from . import report
from .config import apply_args, common_parser, load_settings, setup_logging
from .errors import SetupError
from .runner import run_tasks
from .vcenter import collect_properties, connect_all, vm_by_moref
from .vcloud import connect_vcd

logger = logging.getLogger(__name__)

FIELDS = ["org", "vapp", "vm", "moref", "vcenter", "cluster", "rule", "type", "enabled", "mandatory",
          "members", "vm_group", "host_group"]


@dataclass
class RuleContext:
    org: str
    vcenters: dict
    # vCenter host -> {moref: vm name}
    vm_names: dict = field(default_factory=dict)


def rule_type(rule):
    if isinstance(rule, vim.cluster.AffinityRuleSpec):
        return "affinity"
    if isinstance(rule, vim.cluster.AntiAffinityRuleSpec):
        return "anti-affinity"
    if isinstance(rule, vim.cluster.VmHostRuleInfo):
        if rule.antiAffineHostGroupName:
            return "vm-host anti-affinity"
        return "vm-host affinity"
    if isinstance(rule, vim.cluster.DependencyRuleInfo):
        return "dependency"
    return type(rule).__name__


def _morefs(vms):
    return [vm._moId for vm in vms or []]


def vm_groups(groups):
    """VM group name -> member morefs. Host groups are skipped."""
    return {g.name: _morefs(g.vm) for g in groups or [] if isinstance(g, vim.cluster.VmGroup)}


def rule_members(rule, groups):
    if isinstance(rule, vim.cluster.VmHostRuleInfo):
        return groups.get(rule.vmGroupName, [])
    if isinstance(rule, vim.cluster.DependencyRuleInfo):
        return groups.get(rule.vmGroup, []) + groups.get(rule.dependsOnVmGroup, [])
    return _morefs(getattr(rule, "vm", None))


def rules_for_vm(rules, groups, moref):
    """Rules (from a cluster's ``configurationEx``) that include the VM."""
    group_members = vm_groups(groups)
    return [rule for rule in rules or [] if moref in rule_members(rule, group_members)]


def _host_group(rule):
    if isinstance(rule, vim.cluster.VmHostRuleInfo):
        return rule.affineHostGroupName or rule.antiAffineHostGroupName
    return None


def _vm_group(rule):
    if isinstance(rule, vim.cluster.VmHostRuleInfo):
        return rule.vmGroupName
    if isinstance(rule, vim.cluster.DependencyRuleInfo):
        return f"{rule.vmGroup} -> {rule.dependsOnVmGroup}"
    return None


def resolve_vcenter(record, context):
    """Find which vCenter backs a vCloud Director VM record."""
    if len(context.vcenters) == 1:
        return next(iter(context.vcenters))
    name = record.get("vcName")
    if name in context.vcenters:
        return name
    moref = record.get("moref")
    for host, names in context.vm_names.items():
        if moref in names:
            return host
    return None


def vm_label(record):
    return f"{record.get('containerName', '?')}/{record.get('name', '?')}"


def vm_rules(record, context: RuleContext):
    moref = record.get("moref")
    if not moref:
        return None
    host = resolve_vcenter(record, context)
    if host is None:
        logger.warning(f"{vm_label(record)}: {moref} not found on any connected vCenter")
        return None

    vm = vm_by_moref(context.vcenters[host], moref)
    try:
        esx_host = vm.runtime.host
    except vmodl.fault.ManagedObjectNotFound:
        logger.warning(f"{vm_label(record)}: {moref} no longer exists on {host}")
        return None
    if esx_host is None:
        return None
    cluster = esx_host.parent
    config = getattr(cluster, "configurationEx", None)
    rules = rules_for_vm(getattr(config, "rule", None), getattr(config, "group", None), moref)
    if not rules:
        return None

    names = context.vm_names.get(host, {})
    groups = vm_groups(getattr(config, "group", None))
    return [{
        "org": context.org,
        "vapp": record.get("containerName"),
        "vm": record.get("name"),
        "moref": moref,
        "vcenter": host,
        "cluster": cluster.name,
        "rule": rule.name,
        "type": rule_type(rule),
        "enabled": rule.enabled,
        "mandatory": rule.mandatory,
        "members": [names.get(m, m) for m in rule_members(rule, groups)],
        "vm_group": _vm_group(rule),
        "host_group": _host_group(rule),
    } for rule in rules]


def vm_name_index(vcenters):
    index = {}
    for host, si in vcenters.items():
        index[host] = {item["obj"]._moId: item["name"] for item in collect_properties(si, vim.VirtualMachine, ["name"])}
    return index


def parse_args(argv=None):
    parser = common_parser("List cluster affinity/anti-affinity rules for the VMs of a vCloud Director organization")
    parser.add_argument("--org", required=True, help="vCloud Director organization name")
    parser.add_argument("--cancel-on-error", action="store_true",
                        help="Stop dispatching lookups after the first failed one")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_level)
    vcd = None
    try:
        settings = apply_args(load_settings(args.env_file), args)
        vcd = connect_vcd(settings)
        records = vcd.org_vms(args.org)
        vcenters = connect_all(settings)
        context = RuleContext(org=args.org, vcenters=vcenters, vm_names=vm_name_index(vcenters))
    except (SetupError, requests.RequestException, vmodl.MethodFault) as e:
        logger.error(f"Setup failed: {e}")
        return 1
    finally:
        if vcd:
            vcd.logout()

    logger.info(f"Checking cluster rules for {len(records)} VM(s) of {args.org} "
                f"with {settings.max_threads} thread(s)...")
    batch = run_tasks(records, vm_rules, context, max_workers=settings.max_threads, label=vm_label,
                      cancel_on_error=args.cancel_on_error)
    for failure in batch.failures:
        logger.error(f"{failure.label}: {failure.error}")
    if batch.cancelled:
        logger.warning(f"{len(batch.cancelled)} lookup(s) cancelled")

    rows = report.sort_rows(batch.rows, "cluster", "rule", "vm")
    if rows:
        path = args.output or report.output_path(settings.output_dir, "affinity_rules", args.org, fmt=args.format)
        report.write_rows(rows, path, FIELDS, args.format)
    else:
        logger.info(f"No cluster rules reference VMs of {args.org}.")
    return 2 if batch.failures else 0


if __name__ == "__main__":
    sys.exit(main())
