"""Active Directory computer/group client based on ldap3."""
from __future__ import annotations

import contextlib
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol

import yaml
from ldap3 import (
    BASE,
    KERBEROS,
    MODIFY_ADD,
    MODIFY_DELETE,
    NTLM,
    SASL,
    SIMPLE,
    SUBTREE,
    Connection,
    Server,
)
from ldap3.core.exceptions import LDAPCommunicationError, LDAPException
from ldap3.core.results import (
    RESULT_ATTRIBUTE_OR_VALUE_EXISTS,
    RESULT_BUSY,
    RESULT_ENTRY_ALREADY_EXISTS,
    RESULT_NO_SUCH_ATTRIBUTE,
    RESULT_NO_SUCH_OBJECT,
    RESULT_TIME_LIMIT_EXCEEDED,
    RESULT_UNAVAILABLE,
    RESULT_UNWILLING_TO_PERFORM,
)

from .config import DirectoryConfig
from .dn import (
    escape_filter_value,
    extract_common_name,
    organizational_unit_from_dn,
    parent_dn,
    split_dn,
)
from .models import ComputerDetails, DirectoryResult, ServiceCredentials, qualify_username


logger = logging.getLogger(__name__)

_TRANSIENT_RESULTS = {RESULT_BUSY, RESULT_UNAVAILABLE, RESULT_TIME_LIMIT_EXCEEDED}


class CredentialProvider(Protocol):
    def get_credentials(self) -> Optional[ServiceCredentials]:
        ...


class DirectoryConnectionError(RuntimeError):
    """Raised internally when no usable connection to the directory can be made."""

    def __init__(self, message: str, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


def _matches(term: Optional[str], *values: Any) -> bool:
    if not term:
        return True
    lowered = term.lower()
    return any(lowered in str(value or "").lower() for value in values)


class MockDirectory:
    """YAML-backed directory emulator used for ``mock://`` servers and tests."""

    def __init__(self, data_file: Optional[Path]):
        self.data_file = data_file
        self._data: Dict[str, Any] = {
            "computers": [],
            "groups": [],
            "organizational_units": [],
            "accounts": [],
        }
        self._load()

    def _load(self) -> None:
        if self.data_file and self.data_file.exists():
            with self.data_file.open("r", encoding="utf-8") as handle:
                self._data = yaml.safe_load(handle) or self._data
        self._data.setdefault("computers", [])
        self._data.setdefault("groups", [])
        self._data.setdefault("organizational_units", [])
        self._data.setdefault("accounts", [])

    def _save(self) -> None:
        if not self.data_file:
            return
        self.data_file.parent.mkdir(parents=True, exist_ok=True)
        with self.data_file.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(self._data, handle, sort_keys=False, indent=2)

    def find_computer(self, name: str) -> Optional[Dict[str, Any]]:
        lowered = name.lower()
        for computer in self._data["computers"]:
            if str(computer.get("name") or "").lower() == lowered:
                return computer
        return None

    def find_group(self, name: str) -> Optional[Dict[str, Any]]:
        lowered = name.lower()
        for group in self._data["groups"]:
            candidates = (group.get("name"), group.get("sAMAccountName"))
            if any(str(value or "").lower() == lowered for value in candidates):
                return group
        return None

    def search_computers(self, term: str, limit: int) -> List[str]:
        names = [
            str(computer.get("name"))
            for computer in self._data["computers"]
            if computer.get("name") and _matches(term, computer.get("name"))
        ]
        return names[:limit]

    def search_groups(self, term: str, limit: int) -> List[str]:
        names = [
            str(group.get("name"))
            for group in self._data["groups"]
            if group.get("name") and _matches(term, group.get("name"))
        ]
        return names[:limit]

    def search_organizational_units(self, term: str, limit: int) -> List[str]:
        entries: List[str] = []
        for ou in self._data["organizational_units"]:
            dn = str(ou.get("distinguished_name") or "")
            name = extract_ou_name(dn)
            if dn and _matches(term, name):
                entries.append(dn)
        return entries[:limit]

    def ou_description(self, ou_dn: str) -> str:
        for ou in self._data["organizational_units"]:
            if str(ou.get("distinguished_name") or "").lower() == ou_dn.lower():
                return str(ou.get("description") or "")
        return ""

    def ou_exists(self, ou_dn: str) -> bool:
        return any(
            str(ou.get("distinguished_name") or "").lower() == ou_dn.lower()
            for ou in self._data["organizational_units"]
        )

    def add_member(self, computer: Dict[str, Any], group_dn: str) -> bool:
        member_of = computer.setdefault("member_of", [])
        if any(str(value).lower() == group_dn.lower() for value in member_of):
            return False
        member_of.append(group_dn)
        self._save()
        return True

    def remove_member(self, computer: Dict[str, Any], group_dn: str) -> bool:
        member_of = computer.setdefault("member_of", [])
        remaining = [value for value in member_of if str(value).lower() != group_dn.lower()]
        if len(remaining) == len(member_of):
            return False
        computer["member_of"] = remaining
        self._save()
        return True

    def move_computer(self, computer: Dict[str, Any], target_ou: str) -> None:
        rdn = split_dn(str(computer.get("distinguished_name") or ""))[:1]
        leading = f"{rdn[0][0]}={rdn[0][1]}" if rdn else f"CN={computer.get('name')}"
        computer["distinguished_name"] = f"{leading},{target_ou}"
        self._save()

    def check_bind(self, username: str, password: str) -> bool:
        accounts = self._data.get("accounts") or []
        if not accounts:
            return bool(username and password)
        for account in accounts:
            if (
                str(account.get("username") or "").lower() == username.lower()
                and str(account.get("password") or "") == password
            ):
                return True
        return False


def extract_ou_name(ou_dn: str) -> str:
    components = split_dn(ou_dn)
    if components and components[0][0].upper() == "OU":
        return components[0][1]
    return ""


class ADClient:
    """Wrapper around ldap3 exposing the computer/group operations the clone workflow needs.

    Reads return empty values on failure; mutations return a :class:`DirectoryResult`.
    Neither raises for directory-side problems.
    """

    def __init__(
        self,
        config: DirectoryConfig,
        credentials: Optional[CredentialProvider] = None,
    ):
        self.config = config
        self.credentials = credentials
        self._mock_directory: Optional[MockDirectory] = None
        self.connection: Optional[Connection] = None
        self.server: Optional[Server] = None

        if config.is_mock:
            self._mock_directory = MockDirectory(config.mock_data_file)
        else:
            self.server = Server(
                config.server_uri,
                use_ssl=config.use_ssl,
                connect_timeout=config.connect_timeout,
            )

    def close(self) -> None:
        if self.connection and self.connection.bound:
            self.connection.unbind()
        self.connection = None

    def __enter__(self) -> "ADClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    # Connection ----------------------------------------------------------
    def _connect(self) -> Connection:
        if self.connection is not None and self.connection.bound:
            return self.connection

        assert self.server is not None
        service = self.credentials.get_credentials() if self.credentials else None
        if service is not None:
            connection = Connection(
                self.server,
                user=service.username,
                password=service.password,
                authentication=NTLM,
                receive_timeout=self.config.receive_timeout,
            )
        elif self.config.ambient_auth == "kerberos":
            connection = Connection(
                self.server,
                authentication=SASL,
                sasl_mechanism=KERBEROS,
                receive_timeout=self.config.receive_timeout,
            )
        elif self.config.ambient_auth == "simple":
            connection = Connection(
                self.server,
                user=self.config.ambient_user,
                password=self.config.ambient_password,
                authentication=SIMPLE,
                receive_timeout=self.config.receive_timeout,
            )
        else:
            connection = Connection(self.server, receive_timeout=self.config.receive_timeout)

        try:
            bound = connection.bind()
        except LDAPCommunicationError as exc:
            raise DirectoryConnectionError(
                f"Unable to reach {self.config.server_uri}: {exc}", transient=True
            ) from exc
        except LDAPException as exc:
            raise DirectoryConnectionError(f"Directory bind failed: {exc}") from exc

        if not bound:
            result = connection.result or {}
            raise DirectoryConnectionError(
                f"Directory rejected the bind ({result.get('description', 'unknown error')})."
            )
        self.connection = connection
        return connection

    def _search(
        self,
        search_filter: str,
        attributes: List[str],
        search_base: Optional[str] = None,
        scope: Any = SUBTREE,
        size_limit: int = 0,
    ) -> List[Any]:
        connection = self._connect()
        connection.search(
            search_base=search_base or self.config.base_dn,
            search_filter=search_filter,
            search_scope=scope,
            attributes=attributes,
            size_limit=size_limit,
        )
        return list(connection.entries or [])

    @staticmethod
    def _values(entry: Any, attribute: str) -> List[str]:
        if attribute not in entry:
            return []
        value = entry[attribute].value
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        return [str(value)]

    def _single(self, entry: Any, attribute: str) -> str:
        values = self._values(entry, attribute)
        return values[0] if values else ""

    def _limit(self) -> int:
        return max(1, self.config.search_limit)

    # Searches ------------------------------------------------------------
    def search_computers(self, term: str) -> List[str]:
        """Computer names containing ``term`` (case-insensitive), sorted."""

        try:
            if self._mock_directory:
                names = self._mock_directory.search_computers(term, self._limit())
            else:
                escaped = escape_filter_value(term)
                entries = self._search(
                    f"(&(objectClass=computer)(name=*{escaped}*))",
                    ["name"],
                    size_limit=self._limit(),
                )
                names = [self._single(entry, "name") for entry in entries]
        except (LDAPException, DirectoryConnectionError) as exc:
            logger.error("Error searching computers with term %r: %s", term, exc)
            return []
        return sorted((name for name in names if name), key=str.casefold)

    def search_groups(self, term: str) -> List[str]:
        try:
            if self._mock_directory:
                names = self._mock_directory.search_groups(term, self._limit())
            else:
                escaped = escape_filter_value(term)
                entries = self._search(
                    f"(&(objectClass=group)(name=*{escaped}*))",
                    ["name"],
                    size_limit=self._limit(),
                )
                names = [self._single(entry, "name") for entry in entries]
        except (LDAPException, DirectoryConnectionError) as exc:
            logger.error("Error searching groups with term %r: %s", term, exc)
            return []
        return sorted((name for name in names if name), key=str.casefold)

    def search_organizational_units(self, term: str) -> List[str]:
        try:
            if self._mock_directory:
                ous = self._mock_directory.search_organizational_units(term, self._limit())
            else:
                escaped = escape_filter_value(term)
                entries = self._search(
                    f"(&(objectClass=organizationalUnit)(name=*{escaped}*))",
                    ["distinguishedName"],
                    size_limit=self._limit(),
                )
                ous = [str(entry.entry_dn) for entry in entries]
        except (LDAPException, DirectoryConnectionError) as exc:
            logger.error("Error searching OUs with term %r: %s", term, exc)
            return []
        return sorted(dict.fromkeys(ou for ou in ous if ou), key=str.casefold)

    # Computer lookups ----------------------------------------------------
    def _find_computer(self, computer_name: str) -> Optional[Dict[str, Any]]:
        if self._mock_directory:
            computer = self._mock_directory.find_computer(computer_name)
            if computer is None:
                return None
            return {
                "dn": str(computer.get("distinguished_name") or ""),
                "member_of": [str(value) for value in computer.get("member_of", []) or []],
                "description": str(computer.get("description") or ""),
            }

        escaped = escape_filter_value(computer_name)
        entries = self._search(
            f"(&(objectClass=computer)(|(name={escaped})(sAMAccountName={escaped}$)))",
            ["distinguishedName", "memberOf", "description"],
            size_limit=1,
        )
        if not entries:
            return None
        entry = entries[0]
        return {
            "dn": str(entry.entry_dn),
            "member_of": self._values(entry, "memberOf"),
            "description": self._single(entry, "description"),
        }

    def _find_group_dn(self, group_name: str) -> Optional[str]:
        if self._mock_directory:
            group = self._mock_directory.find_group(group_name)
            return str(group.get("distinguished_name")) if group else None

        escaped = escape_filter_value(group_name)
        entries = self._search(
            f"(&(objectClass=group)(|(cn={escaped})(sAMAccountName={escaped})(name={escaped})))",
            ["distinguishedName"],
            size_limit=1,
        )
        return str(entries[0].entry_dn) if entries else None

    def get_computer_groups(self, computer_name: str) -> List[str]:
        """Group names the computer is a direct member of, parsed from ``memberOf``."""

        try:
            computer = self._find_computer(computer_name)
        except (LDAPException, DirectoryConnectionError) as exc:
            logger.error("Error getting groups for computer %s: %s", computer_name, exc)
            return []
        if computer is None:
            logger.warning("Computer %s not found while reading groups", computer_name)
            return []

        groups = [extract_common_name(dn) for dn in computer["member_of"]]
        return sorted((name for name in groups if name), key=str.casefold)

    def get_computer_ou(self, computer_name: str) -> str:
        try:
            computer = self._find_computer(computer_name)
        except (LDAPException, DirectoryConnectionError) as exc:
            logger.error("Error getting OU for computer %s: %s", computer_name, exc)
            return ""
        if computer is None:
            return ""
        return organizational_unit_from_dn(computer["dn"])

    def get_computer_details(self, computer_name: str) -> ComputerDetails:
        try:
            computer = self._find_computer(computer_name)
            if computer is None:
                return ComputerDetails()
            ou = organizational_unit_from_dn(computer["dn"])
            ou_description = self._ou_description(ou) if ou else ""
        except (LDAPException, DirectoryConnectionError) as exc:
            logger.error("Error getting details for computer %s: %s", computer_name, exc)
            return ComputerDetails()
        return ComputerDetails(
            ou=ou,
            ou_description=ou_description,
            computer_description=computer["description"],
        )

    def _ou_description(self, ou_dn: str) -> str:
        if self._mock_directory:
            return self._mock_directory.ou_description(ou_dn)
        entries = self._search(
            "(objectClass=organizationalUnit)",
            ["description"],
            search_base=ou_dn,
            scope=BASE,
        )
        return self._single(entries[0], "description") if entries else ""

    # Mutations -----------------------------------------------------------
    def _failure(self, action: str, exc: Exception) -> DirectoryResult:
        transient = isinstance(exc, LDAPCommunicationError) or (
            isinstance(exc, DirectoryConnectionError) and exc.transient
        )
        message = f"{action}: {exc}"
        logger.error("Error %s", message)
        return DirectoryResult.transient(message) if transient else DirectoryResult.permanent(message)

    def _modify_result(self, action: str) -> DirectoryResult:
        assert self.connection is not None
        result = self.connection.result or {}
        code = result.get("result")
        description = result.get("description", "unknown error")
        message = f"{action} rejected ({description})"
        if code in (RESULT_ENTRY_ALREADY_EXISTS, RESULT_ATTRIBUTE_OR_VALUE_EXISTS):
            return DirectoryResult.already_satisfied(message)
        if code in _TRANSIENT_RESULTS:
            return DirectoryResult.transient(message)
        if code == RESULT_NO_SUCH_OBJECT:
            return DirectoryResult.not_found(message)
        return DirectoryResult.permanent(message)

    def _resolve(
        self, computer_name: str, group_name: str
    ) -> tuple[Optional[Dict[str, Any]], Optional[str], Optional[DirectoryResult]]:
        computer = self._find_computer(computer_name)
        if computer is None:
            logger.warning("Computer %s not found", computer_name)
            return None, None, DirectoryResult.not_found(f"Computer {computer_name} not found")
        group_dn = self._find_group_dn(group_name)
        if group_dn is None:
            logger.warning("Group %s not found", group_name)
            return computer, None, DirectoryResult.not_found(f"Group {group_name} not found")
        return computer, group_dn, None

    @staticmethod
    def _is_member(computer: Dict[str, Any], group_dn: str) -> bool:
        lowered = group_dn.lower()
        return any(value.lower() == lowered for value in computer["member_of"])

    def add_computer_to_group(self, computer_name: str, group_name: str) -> DirectoryResult:
        """Add the computer to a group; already being a member counts as success."""

        try:
            computer, group_dn, missing = self._resolve(computer_name, group_name)
            if missing is not None:
                return missing
            assert computer is not None and group_dn is not None

            if self._is_member(computer, group_dn):
                logger.info(
                    "Computer %s is already a member of group %s - skipping",
                    computer_name,
                    group_name,
                )
                return DirectoryResult.already_satisfied(f"Already a member of {group_name}")

            if self._mock_directory:
                raw = self._mock_directory.find_computer(computer_name)
                assert raw is not None
                self._mock_directory.add_member(raw, group_dn)
            else:
                connection = self._connect()
                if not connection.modify(group_dn, {"member": [(MODIFY_ADD, [computer["dn"]])]}):
                    result = self._modify_result(f"Adding {computer_name} to {group_name}")
                    if not result.ok:
                        logger.error("%s", result.message)
                    return result
        except (LDAPException, DirectoryConnectionError) as exc:
            return self._failure(f"adding computer {computer_name} to group {group_name}", exc)

        logger.info("Successfully added computer %s to group %s", computer_name, group_name)
        return DirectoryResult.succeeded()

    def remove_computer_from_group(self, computer_name: str, group_name: str) -> DirectoryResult:
        """Remove the computer from a group; not being a member counts as success."""

        try:
            computer, group_dn, missing = self._resolve(computer_name, group_name)
            if missing is not None:
                return missing
            assert computer is not None and group_dn is not None

            if not self._is_member(computer, group_dn):
                logger.info(
                    "Computer %s is not a member of group %s - already removed",
                    computer_name,
                    group_name,
                )
                return DirectoryResult.already_satisfied(f"Not a member of {group_name}")

            if self._mock_directory:
                raw = self._mock_directory.find_computer(computer_name)
                assert raw is not None
                self._mock_directory.remove_member(raw, group_dn)
            else:
                connection = self._connect()
                if not connection.modify(
                    group_dn, {"member": [(MODIFY_DELETE, [computer["dn"]])]}
                ):
                    result = connection.result or {}
                    if result.get("result") in (RESULT_NO_SUCH_ATTRIBUTE, RESULT_UNWILLING_TO_PERFORM):
                        # AD reports a missing member value either way
                        return DirectoryResult.already_satisfied(
                            f"Not a member of {group_name}"
                        )
                    outcome = self._modify_result(f"Removing {computer_name} from {group_name}")
                    logger.error("%s", outcome.message)
                    return outcome
        except (LDAPException, DirectoryConnectionError) as exc:
            return self._failure(f"removing computer {computer_name} from group {group_name}", exc)

        logger.info("Successfully removed computer %s from group %s", computer_name, group_name)
        return DirectoryResult.succeeded()

    def move_computer_to_ou(self, computer_name: str, target_ou: str) -> DirectoryResult:
        try:
            computer = self._find_computer(computer_name)
            if computer is None:
                logger.warning("Computer %s not found", computer_name)
                return DirectoryResult.not_found(f"Computer {computer_name} not found")

            current_dn = computer["dn"]
            logger.info("Moving computer %s from %s to %s", computer_name, current_dn, target_ou)
            if parent_dn(current_dn).lower() == target_ou.lower():
                return DirectoryResult.already_satisfied(f"{computer_name} is already in {target_ou}")

            if self._mock_directory:
                if not self._mock_directory.ou_exists(target_ou):
                    return DirectoryResult.not_found(f"OU {target_ou} not found")
                raw = self._mock_directory.find_computer(computer_name)
                assert raw is not None
                self._mock_directory.move_computer(raw, target_ou)
            else:
                attribute, value = split_dn(current_dn)[0]
                connection = self._connect()
                if not connection.modify_dn(
                    current_dn, f"{attribute}={value}", new_superior=target_ou
                ):
                    result = self._modify_result(f"Moving {computer_name} to {target_ou}")
                    logger.error("%s", result.message)
                    return result
        except (LDAPException, DirectoryConnectionError) as exc:
            return self._failure(f"moving computer {computer_name} to OU {target_ou}", exc)

        logger.info("Successfully moved computer %s to %s", computer_name, target_ou)
        return DirectoryResult.succeeded()


def verify_credentials(config: DirectoryConfig, domain: str, username: str, password: str) -> bool:
    """Try a bind with explicit credentials without touching stored state."""

    qualified = qualify_username(domain, username)
    if config.is_mock:
        return MockDirectory(config.mock_data_file).check_bind(qualified, password)

    if domain and domain.lower() != config.domain.lower():
        scheme = "ldaps" if config.use_ssl else "ldap"
        server_uri = f"{scheme}://{domain}"
    else:
        server_uri = config.server_uri
    server = Server(server_uri, use_ssl=config.use_ssl, connect_timeout=config.connect_timeout)
    connection = Connection(
        server,
        user=qualified,
        password=password,
        authentication=NTLM,
        receive_timeout=config.receive_timeout,
    )
    try:
        return bool(connection.bind())
    except LDAPException as exc:
        logger.warning("Service account test failed for user %s: %s", qualified, exc)
        return False
    finally:
        if connection.bound:
            connection.unbind()


@contextlib.contextmanager
def ad_client(
    config: DirectoryConfig, credentials: Optional[CredentialProvider] = None
) -> Iterator[ADClient]:
    client = ADClient(config, credentials)
    try:
        yield client
    finally:
        client.close()


__all__ = [
    "ADClient",
    "CredentialProvider",
    "DirectoryConnectionError",
    "MockDirectory",
    "ad_client",
    "verify_credentials",
]
