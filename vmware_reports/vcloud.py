import logging
from base64 import b64encode

import requests
import urllib3

from .errors import SetupError

logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-VMWARE-VCLOUD-ACCESS-TOKEN"
REQUESTS_TIMEOUT = 30


class VCDClient:
    """Read-only vCloud Director API client."""

    def __init__(self, host, api_version="38.0", verify_ssl=False):
        self.host = host.rstrip("/")
        self.api_version = api_version
        self.session = requests.Session()
        self.session.verify = verify_ssl
        self.access_token = None
        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @property
    def base_url(self):
        return f"https://{self.host}"

    def _headers(self):
        headers = {"Accept": f"application/*+json;version={self.api_version}"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def login(self, username, password, org="system"):
        """Open a session, falling back once to the legacy /api/sessions endpoint."""
        auth_user = f"{username}@{org}"
        try:
            self._login_cloudapi(auth_user, password, org)
        except (requests.RequestException, SetupError) as e:
            logger.warning(f"CloudAPI login to {self.host} failed ({e}), trying legacy /api/sessions")
            try:
                self._login_legacy(auth_user, password)
            except (requests.RequestException, SetupError) as e_legacy:
                raise SetupError(f"Failed to log in to vCloud Director {self.host} as {auth_user}: {e_legacy}") \
                    from e_legacy
        logger.info(f"Logged in to vCloud Director: {self.host} ({auth_user})")

    def _login_cloudapi(self, auth_user, password, org):
        path = "/cloudapi/1.0.0/sessions/provider" if org.lower() == "system" else "/cloudapi/1.0.0/sessions"
        credentials = b64encode(f"{auth_user}:{password}".encode()).decode()
        response = self.session.post(
            self.base_url + path,
            headers={"Accept": f"application/json;version={self.api_version}",
                     "Authorization": f"Basic {credentials}"},
            timeout=REQUESTS_TIMEOUT,
        )
        response.raise_for_status()
        self._take_token(response)

    def _login_legacy(self, auth_user, password):
        response = self.session.post(
            self.base_url + "/api/sessions",
            headers={"Accept": f"application/*+json;version={self.api_version}"},
            auth=(auth_user, password),
            timeout=REQUESTS_TIMEOUT,
        )
        response.raise_for_status()
        self._take_token(response)

    def _take_token(self, response):
        token = response.headers.get(TOKEN_HEADER)
        if not token:
            raise SetupError(f"No {TOKEN_HEADER} header in login response")
        self.access_token = token

    def logout(self):
        if not self.access_token:
            return
        try:
            self.session.delete(self.base_url + "/api/session", headers=self._headers(), timeout=REQUESTS_TIMEOUT)
            logger.info(f"Logged out of vCloud Director: {self.host}")
        except requests.RequestException as e:
            logger.warning(f"Error during logout from {self.host}: {e}")
        finally:
            self.access_token = None
            self.session.close()

    def query(self, record_type, filter=None, page_size=128):
        """Yield every record of a typed query, following pages."""
        page = 1
        fetched = 0
        while True:
            params = {"type": record_type, "format": "records", "page": page, "pageSize": page_size}
            if filter:
                params["filter"] = filter
            response = self.session.get(self.base_url + "/api/query", headers=self._headers(), params=params,
                                        timeout=REQUESTS_TIMEOUT)
            response.raise_for_status()
            data = response.json()
            records = data.get("record") or []
            yield from records
            fetched += len(records)
            total = int(data.get("total", 0))
            if not records or fetched >= total or len(records) < page_size:
                break
            page += 1

    def get_org(self, name):
        for record in self.query("organization", filter=f"name=={name}"):
            if record.get("name") == name:
                return record
        raise SetupError(f"Organization '{name}' not found on {self.host}")

    def org_vms(self, org_name):
        """``adminVM`` records of an organization, without vApp template VMs."""
        org = self.get_org(org_name)
        vms = [r for r in self.query("adminVM", filter=f"org=={org['href']};isVAppTemplate==false")
               if not r.get("isVAppTemplate")]
        logger.info(f"Organization {org_name}: {len(vms)} VM(s)")
        return vms


def connect_vcd(settings):
    settings.require_vcd()
    client = VCDClient(settings.vcd_host, settings.vcd_api_version, verify_ssl=not settings.vcd_disable_ssl)
    client.login(settings.vcd_user, settings.vcd_password, settings.vcd_org)
    return client
