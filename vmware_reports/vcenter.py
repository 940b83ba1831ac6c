import atexit
import logging
import ssl

from pyVim import connect
from pyVmomi import vim, vmodl

from .errors import SetupError

logger = logging.getLogger(__name__)


# --- vCenter connect ---
def connect_to_vcenter(host, user, password, port=443, disable_ssl=True):
    ssl_ctx = None
    if disable_ssl:
        ssl_ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        ssl_ctx.check_hostname = False
        ssl_ctx.verify_mode = ssl.CERT_NONE
    try:
        si = connect.SmartConnect(host=host, user=user, pwd=password, port=port, sslContext=ssl_ctx)
    except Exception as e:
        raise SetupError(f"Failed to connect to vCenter {host}: {e}") from e
    atexit.register(_disconnect, si, host)
    logger.info(f"Connected to vCenter: {host}")
    return si


def _disconnect(si, host):
    try:
        connect.Disconnect(si)
        logger.info(f"Disconnected from vCenter: {host}")
    except Exception as e:
        logger.warning(f"Error during disconnect from {host}: {e}")


def connect_all(settings):
    """Connect to every configured vCenter. Any failure aborts the run."""
    settings.require_vcenter()
    return {
        host: connect_to_vcenter(host, settings.vc_user, settings.vc_password, settings.vc_port,
                                 settings.vc_disable_ssl)
        for host in settings.vc_hosts
    }


# --- Utility: fast property collector ---
def collect_properties(si, obj_type, properties, container=None):
    """Fetch ``properties`` for every ``obj_type`` object below ``container``.

    Returns one dict per object with the managed object under ``"obj"`` and
    each requested property path as a key. Properties the server reports as
    missing are set to ``None``.
    """
    content = si.RetrieveContent()
    view = content.viewManager.CreateContainerView(container or content.rootFolder, [obj_type], True)

    obj_spec = vmodl.query.PropertyCollector.ObjectSpec(
        obj=view, skip=True,
        selectSet=[
            vmodl.query.PropertyCollector.TraversalSpec(
                name="traverseView", path="view", skip=False, type=view.__class__
            )
        ]
    )
    prop_spec = vmodl.query.PropertyCollector.PropertySpec(type=obj_type, all=False, pathSet=properties)
    filter_spec = vmodl.query.PropertyCollector.FilterSpec(objectSet=[obj_spec], propSet=[prop_spec])

    results = []
    try:
        props = content.propertyCollector.RetrievePropertiesEx(
            specSet=[filter_spec], options=vmodl.query.PropertyCollector.RetrieveOptions()
        )
        while props:
            for o in props.objects:
                result = {"obj": o.obj}
                for path in properties:
                    result[path] = None
                for p in o.propSet:
                    result[p.name] = p.val
                for missing in getattr(o, "missingSet", None) or []:
                    logger.debug(f"Property {missing.path} missing for {o.obj} ({obj_type.__name__}): "
                                 f"{_fault_message(missing.fault)}")
                results.append(result)
            token = getattr(props, "token", None)
            if not token:
                break
            props = content.propertyCollector.ContinueRetrievePropertiesEx(token=token)
    finally:
        view.Destroy()
    return results


def _fault_message(fault):
    messages = getattr(fault, "faultMessage", None)
    if isinstance(messages, list) and messages:
        return messages[0].message
    return getattr(fault, "msg", None) or "N/A"


def vm_by_moref(si, moref):
    return vim.VirtualMachine(moref, stub=si._stub)
