"""Find VMs that share the same cloud-assigned identifier.

vCloud Director stamps every VM it manages with an advanced setting
(``cloud.uuid`` by default). Copies made outside vCloud Director keep that
value, leaving two or more VMs claiming the same identity.
"""
import logging
import sys
from collections import defaultdict

from pyVmomi import vim, vmodl

from . import report
from .config import apply_args, common_parser, load_settings, setup_logging
from .errors import SetupError
from .vcenter import collect_properties, connect_all

logger = logging.getLogger(__name__)

DEFAULT_KEY = "cloud.uuid"
VM_PROPERTIES = ["name", "config.extraConfig", "config.instanceUuid", "runtime.powerState",
                 "summary.config.vmPathName"]
FIELDS = ["cloud_id", "count", "vcenter", "vm_name", "instance_uuid", "power_state", "vmx_path"]


def cloud_id_of(extra_config, key=DEFAULT_KEY):
    for option in extra_config or []:
        if option.key == key:
            value = str(option.value).strip() if option.value is not None else ""
            return value or None
    return None


def find_duplicates(records, key=DEFAULT_KEY):
    """Rows for every VM whose cloud id is shared with at least one other VM.

    ``records`` are property-collector dicts with an extra ``"vcenter"`` key.
    """
    by_id = defaultdict(list)
    for record in records:
        cloud_id = cloud_id_of(record.get("config.extraConfig"), key)
        if cloud_id:
            by_id[cloud_id].append(record)

    rows = []
    for cloud_id, vms in by_id.items():
        if len(vms) < 2:
            continue
        for vm in vms:
            rows.append({
                "cloud_id": cloud_id,
                "count": len(vms),
                "vcenter": vm.get("vcenter"),
                "vm_name": vm.get("name"),
                "instance_uuid": vm.get("config.instanceUuid"),
                "power_state": str(vm.get("runtime.powerState") or "N/A"),
                "vmx_path": vm.get("summary.config.vmPathName"),
            })
    return report.sort_rows(rows, "cloud_id", "vcenter", "vm_name")


def collect_vms(vcenters):
    records = []
    for host, si in vcenters.items():
        logger.info(f"[{host}] Fetching VM properties...")
        vms = collect_properties(si, vim.VirtualMachine, VM_PROPERTIES)
        for vm in vms:
            vm["vcenter"] = host
        logger.info(f"[{host}] {len(vms)} VM(s)")
        records.extend(vms)
    return records


def parse_args(argv=None):
    parser = common_parser("Find VMs sharing a duplicate cloud-assigned identifier")
    parser.add_argument("--key", default=DEFAULT_KEY, help=f"Advanced setting holding the id (default: {DEFAULT_KEY})")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_level)
    try:
        settings = apply_args(load_settings(args.env_file), args)
        vcenters = connect_all(settings)
        records = collect_vms(vcenters)
    except (SetupError, vmodl.MethodFault) as e:
        logger.error(f"Setup failed: {e}")
        return 1

    rows = find_duplicates(records, args.key)
    if not rows:
        logger.info(f"No duplicate '{args.key}' values across {len(records)} VM(s).")
        return 0

    logger.warning(f"{len({r['cloud_id'] for r in rows})} duplicated id(s) on {len(rows)} VM(s)")
    path = args.output or report.output_path(settings.output_dir, "duplicate_cloud_ids", fmt=args.format)
    report.write_rows(rows, path, FIELDS, args.format)
    return 0


if __name__ == "__main__":
    sys.exit(main())
