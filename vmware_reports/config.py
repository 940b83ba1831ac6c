import argparse
import logging
import os
from dataclasses import dataclass, field
from getpass import getpass
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .errors import ConfigError
from .runner import DEFAULT_MAX_WORKERS

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

logger = logging.getLogger(__name__)


def _env_bool(name, default="True"):
    return os.getenv(name, default).strip().lower() == "true"


def _env_int(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


@dataclass
class Settings:
    vc_hosts: List[str] = field(default_factory=list)
    vc_user: Optional[str] = None
    vc_password: Optional[str] = None
    vc_port: int = 443
    vc_disable_ssl: bool = True

    vcd_host: Optional[str] = None
    vcd_user: Optional[str] = None
    vcd_password: Optional[str] = None
    vcd_org: str = "system"
    vcd_api_version: str = "38.0"
    vcd_disable_ssl: bool = True

    max_threads: int = DEFAULT_MAX_WORKERS
    output_dir: str = "."

    def require_vcenter(self):
        if not all([self.vc_user, self.vc_hosts]):  # password can be prompted
            raise ConfigError("Missing VCENTER_USER or VCENTER_HOSTS in environment/.env")
        if not self.vc_password:
            self.vc_password = _prompt(f"Enter password for VMware user '{self.vc_user}' (for all listed vCenters): ")
        if self.vc_disable_ssl:
            logger.warning("vCenter SSL CERTIFICATE VERIFICATION IS DISABLED. "
                           "This is a security risk and NOT recommended for production.")

    def require_vcd(self):
        if not all([self.vcd_host, self.vcd_user]):
            raise ConfigError("Missing VCD_HOST or VCD_USER in environment/.env")
        if not self.vcd_password:
            self.vcd_password = _prompt(f"Enter password for vCloud Director user '{self.vcd_user}@{self.vcd_org}': ")
        if self.vcd_disable_ssl:
            logger.warning("vCloud Director SSL CERTIFICATE VERIFICATION IS DISABLED.")


def _prompt(prompt):
    try:
        password = getpass(prompt=prompt)
    except (EOFError, KeyboardInterrupt) as e:
        raise ConfigError(f"Could not read password: {e}")
    if not password:
        raise ConfigError("Empty password")
    return password


def load_settings(env_file=None) -> Settings:
    """Read settings from ``.env`` (if present) and the process environment."""
    load_dotenv(dotenv_path=env_file or Path.cwd() / ".env")

    max_threads = _env_int("MAX_THREADS", DEFAULT_MAX_WORKERS)
    if max_threads < 1:
        raise ConfigError(f"MAX_THREADS must be >= 1, got {max_threads}")

    return Settings(
        vc_hosts=[h.strip() for h in os.getenv("VCENTER_HOSTS", "").split(",") if h.strip()],
        vc_user=os.getenv("VCENTER_USER"),
        vc_password=os.getenv("VCENTER_PASSWORD"),
        vc_port=_env_int("VCENTER_PORT", 443),
        vc_disable_ssl=_env_bool("VMWARE_DISABLE_SSL_VERIFICATION"),
        vcd_host=os.getenv("VCD_HOST"),
        vcd_user=os.getenv("VCD_USER"),
        vcd_password=os.getenv("VCD_PASSWORD"),
        vcd_org=os.getenv("VCD_ORG", "system"),
        vcd_api_version=os.getenv("VCD_API_VERSION", "38.0"),
        vcd_disable_ssl=_env_bool("VCD_DISABLE_SSL_VERIFICATION"),
        max_threads=max_threads,
        output_dir=os.getenv("OUTPUT_DIR", "."),
    )


def setup_logging(level="INFO"):
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)
    # urllib3 logs every request at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def positive_int(value):
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {number}")
    return number


def common_parser(description):
    """Argument parser with the flags every report shares."""
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument("--env-file", default=None, help="Path to a .env file (default: ./.env)")
    parser.add_argument("--max-threads", type=positive_int, default=None,
                        help=f"Concurrent inventory queries (default: MAX_THREADS or {DEFAULT_MAX_WORKERS})")
    parser.add_argument("--output", default=None, help="Output file (default: generated name in OUTPUT_DIR)")
    parser.add_argument("--format", choices=["csv", "json"], default="csv", help="Report format")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser


def apply_args(settings: Settings, args) -> Settings:
    if getattr(args, "max_threads", None):
        settings.max_threads = args.max_threads
    return settings
