"""Find files on a datastore that no registered VM owns.

The owned-file set is built from every VM's ``layoutEx`` up front; each
top-level datastore folder is then searched in its own browser task,
dispatched through the parallel runner.
"""
import logging
import re
import sys
from dataclasses import dataclass, field

from pyVim.task import WaitForTask
from pyVmomi import vim, vmodl

from . import report
from .config import apply_args, common_parser, load_settings, setup_logging
from .errors import SetupError
from .runner import run_tasks
from .vcenter import collect_properties, connect_all

logger = logging.getLogger(__name__)

FIELDS = ["datastore", "folder", "path", "size_bytes", "modified"]

DEFAULT_IGNORE = [
    r"/\.lck-[0-9a-f]+$",           # VMFS lock files
    r"\.iso$",                      # install media
    r"\] \.[^/]+\.sf$",             # VMFS metadata files in the root
    r"\] \.sdd\.sf/",
    r"\] \.vSphere-HA/",
    r"\] \.dvsData/",
    r"\] vmkdump/",                 # ESXi dump files
]

VM_FILE_PROPERTIES = ["layoutEx.file", "config.files.vmPathName"]


@dataclass
class LeftoverContext:
    si: object
    datastore: str
    browser: object
    owned: frozenset
    ignore: list = field(default_factory=list)


def compile_ignore(patterns):
    return [re.compile(p, re.IGNORECASE) for p in patterns]


def datastore_path(datastore, relative=""):
    return f"[{datastore}] {relative}".rstrip() if relative else f"[{datastore}]"


def _join(folder_path, name):
    folder_path = folder_path.rstrip()
    if folder_path.endswith("]"):
        return f"{folder_path} {name}"
    return f"{folder_path.rstrip('/')}/{name}"


def _folder_of(folder_path):
    """Top-level folder name from ``[ds] folder/sub`` (empty for the root)."""
    _, _, relative = folder_path.partition("] ")
    return relative.strip("/").split("/", 1)[0]


def is_ignored(path, ignore):
    return any(pattern.search(path) for pattern in ignore)


def is_owned(path, owned):
    """True when a VM layout lists ``path``; a leading ``/`` after the datastore prefix is tolerated."""
    return _normalize(path) in owned or path in owned


def _normalize(path):
    ds, sep, relative = path.partition("] ")
    return f"{ds}{sep}{relative.lstrip('/')}" if sep else path


def owned_files(vm_records, datastore):
    """Every file path of every VM that lives on ``datastore``."""
    prefix = f"[{datastore}] "
    owned = set()
    for record in vm_records:
        for file_info in record.get("layoutEx.file") or []:
            if file_info.name.startswith(prefix):
                owned.add(file_info.name)
        vmx = record.get("config.files.vmPathName")
        if vmx and vmx.startswith(prefix):
            owned.add(vmx)
    return frozenset(owned)


def leftover_files(search_results, owned, ignore=(), datastore=None):
    """Rows for every plain file in ``search_results`` that is neither owned nor ignored."""
    rows = []
    for result in search_results or []:
        folder_path = result.folderPath
        for info in result.file or []:
            if isinstance(info, vim.host.DatastoreBrowser.FolderInfo):
                continue
            path = _join(folder_path, info.path)
            if is_owned(path, owned) or is_ignored(path, ignore):
                continue
            rows.append({
                "datastore": datastore,
                "folder": _folder_of(folder_path),
                "path": path,
                "size_bytes": info.fileSize,
                "modified": str(info.modification) if info.modification else "",
            })
    return rows


def _search_spec():
    details = vim.host.DatastoreBrowser.FileInfo.Details(fileSize=True, modification=True, fileType=True)
    # FolderQuery makes the server return folders as FolderInfo; Query matches everything else
    query = [vim.host.DatastoreBrowser.FolderQuery(), vim.host.DatastoreBrowser.Query()]
    return vim.host.DatastoreBrowser.SearchSpec(details=details, query=query)


def folder_leftovers(folder, context: LeftoverContext):
    task = context.browser.SearchDatastoreSubFolders_Task(
        datastorePath=datastore_path(context.datastore, folder), searchSpec=_search_spec())
    WaitForTask(task, si=context.si)
    return leftover_files(task.info.result, context.owned, context.ignore, context.datastore) or None


def list_root(si, browser, datastore):
    """Top-level entries of the datastore: (folder names, root search result)."""
    task = browser.SearchDatastore_Task(datastorePath=datastore_path(datastore), searchSpec=_search_spec())
    WaitForTask(task, si=si)
    result = task.info.result
    folders = [info.path for info in result.file or [] if isinstance(info, vim.host.DatastoreBrowser.FolderInfo)]
    return folders, result


def locate_datastore(vcenters, name):
    for host, si in vcenters.items():
        for item in collect_properties(si, vim.Datastore, ["name", "browser", "summary.accessible"]):
            if item["name"] != name:
                continue
            if item["summary.accessible"] is False:
                raise SetupError(f"Datastore '{name}' on {host} is not accessible")
            logger.info(f"[{host}] Found datastore {name}")
            return host, si, item["browser"]
    raise SetupError(f"Datastore '{name}' not found on {', '.join(vcenters) or 'any vCenter'}")


def parse_args(argv=None):
    parser = common_parser("List files left behind on a datastore that no registered VM owns")
    parser.add_argument("--datastore", required=True, help="Datastore name")
    parser.add_argument("--ignore", action="append", default=[], metavar="REGEX",
                        help="Skip paths matching REGEX (repeatable)")
    parser.add_argument("--default-ignore", action="store_true",
                        help="Also skip lock files, ISOs, VMFS metadata and dump folders")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_level)
    patterns = list(args.ignore) + (DEFAULT_IGNORE if args.default_ignore else [])
    try:
        ignore = compile_ignore(patterns)
    except re.error as e:
        logger.error(f"Invalid --ignore pattern: {e}")
        return 1

    try:
        settings = apply_args(load_settings(args.env_file), args)
        vcenters = connect_all(settings)
        host, si, browser = locate_datastore(vcenters, args.datastore)
        logger.info(f"[{host}] Fetching VM file layouts...")
        owned = owned_files(collect_properties(si, vim.VirtualMachine, VM_FILE_PROPERTIES), args.datastore)
        logger.info(f"[{host}] {len(owned)} file(s) owned by VMs on {args.datastore}")
        folders, root = list_root(si, browser, args.datastore)
    except (SetupError, vmodl.MethodFault) as e:
        logger.error(f"Setup failed: {e}")
        return 1

    context = LeftoverContext(si=si, datastore=args.datastore, browser=browser, owned=owned, ignore=ignore)
    rows = leftover_files([root], owned, ignore, args.datastore)
    logger.info(f"Searching {len(folders)} folder(s) on {args.datastore} with {settings.max_threads} thread(s)...")
    batch = run_tasks(folders, folder_leftovers, context, max_workers=settings.max_threads,
                      label=lambda f: datastore_path(args.datastore, f))
    for failure in batch.failures:
        logger.error(f"{failure.label}: {failure.error}")

    rows = report.sort_rows(rows + batch.rows, "folder", "path")
    if rows:
        total = sum(r["size_bytes"] or 0 for r in rows)
        logger.warning(f"{len(rows)} unowned file(s), {total / 1024 ** 3:.2f} GB on {args.datastore}")
        path = args.output or report.output_path(settings.output_dir, "datastore_leftovers", args.datastore,
                                                 fmt=args.format)
        report.write_rows(rows, path, FIELDS, args.format)
    else:
        logger.info(f"No unowned files on {args.datastore}.")
    return 2 if batch.failures else 0


if __name__ == "__main__":
    sys.exit(main())
