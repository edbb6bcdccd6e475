"""Package inventory boundary and its REST table API implementation.

The inventory answers questions about installed packages: which version is
installed now, what a package depends on, whether it carries local
customizations, and what an install candidate (a published target version)
refers to. The dependency analyzer and batch creation use it up front; the
progress reconciler uses current_version() as ground truth at the end.

TableApiPackageInventory reads these from a REST table API:

    sys_store_app        installed packages (name, version, vendor, scope)
    sys_app_version      published versions (install candidates)
    sys_app_dependency   package -> package dependency edges
    sys_update_xml       local customizations, by application scope
"""

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PackageCandidate:
    """An installable target version of an installed package.

    Attributes:
        candidate_id: Identifier of the published target version.
        package_id: Identifier of the installed package it updates.
        package_name: Display name of the package.
        from_version: Currently installed version.
        to_version: Target version.
        vendor: Publisher of the package.
    """

    candidate_id: str
    package_id: str
    package_name: str
    from_version: str
    to_version: str
    vendor: str = ""


class PackageInventory(Protocol):
    """Read-only view of installed packages."""

    def resolve_candidate(self, candidate_id: str) -> PackageCandidate | None:
        """Resolve a candidate identifier, or None if unknown."""
        ...

    def current_version(self, package_id: str) -> str | None:
        """Return the currently installed version, or None if not installed."""
        ...

    def dependencies(self, package_id: str) -> list[str]:
        """Return identifiers of the packages this package depends on."""
        ...

    def has_customizations(self, package_id: str) -> bool:
        """Return whether the package has local customizations."""
        ...

    def display_name(self, package_id: str) -> str:
        """Return the display name, falling back to the identifier."""
        ...

    def list_available_updates(self) -> list[PackageCandidate]:
        """List installed packages that have a newer published version."""
        ...


class TableApiPackageInventory:
    """PackageInventory implementation over a REST table API."""

    TABLE_PATH = "/api/now/table/{table}"

    def __init__(
        self,
        base_url: str,
        username: str = "",
        password: str = "",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize with instance URL and credentials.

        Args:
            base_url: Instance base URL.
            username: Basic auth user name.
            password: Basic auth password.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (tests inject a MockTransport).
        """
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            auth=(username, password) if username else None,
            timeout=timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )
        self._names: dict[str, str] = {}

    def __enter__(self) -> "TableApiPackageInventory":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def _get_record(
        self, table: str, sys_id: str, fields: str
    ) -> dict[str, Any] | None:
        resp = self._client.get(
            f"{self.TABLE_PATH.format(table=table)}/{sys_id}",
            params={
                "sysparm_fields": fields,
                "sysparm_exclude_reference_link": "true",
            },
        )
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json().get("result") or None

    def _query(
        self, table: str, query: str, fields: str, limit: int | None = None
    ) -> list[dict[str, Any]]:
        params = {
            "sysparm_query": query,
            "sysparm_fields": fields,
            "sysparm_exclude_reference_link": "true",
        }
        if limit is not None:
            params["sysparm_limit"] = str(limit)
        resp = self._client.get(self.TABLE_PATH.format(table=table), params=params)
        resp.raise_for_status()
        return resp.json().get("result") or []

    def _package(self, package_id: str) -> dict[str, Any] | None:
        record = self._get_record(
            "sys_store_app", package_id, "sys_id,name,version,vendor,scope"
        )
        if record and record.get("name"):
            self._names[package_id] = record["name"]
        return record

    def resolve_candidate(self, candidate_id: str) -> PackageCandidate | None:
        version = self._get_record(
            "sys_app_version", candidate_id, "sys_id,version,source_app_id"
        )
        if version is None or not version.get("source_app_id"):
            return None
        package_id = version["source_app_id"]
        package = self._package(package_id)
        if package is None:
            logger.warning(
                "Candidate %s refers to unknown package %s", candidate_id, package_id
            )
            return None
        return PackageCandidate(
            candidate_id=candidate_id,
            package_id=package_id,
            package_name=package.get("name") or package_id,
            from_version=package.get("version") or "",
            to_version=version.get("version") or "",
            vendor=package.get("vendor") or "",
        )

    def current_version(self, package_id: str) -> str | None:
        package = self._package(package_id)
        if package is None:
            return None
        return package.get("version") or None

    def dependencies(self, package_id: str) -> list[str]:
        rows = self._query(
            "sys_app_dependency", f"source_app_id={package_id}", "target_app_id"
        )
        return [row["target_app_id"] for row in rows if row.get("target_app_id")]

    def has_customizations(self, package_id: str) -> bool:
        package = self._package(package_id)
        scope = (package or {}).get("scope")
        if not scope:
            return False
        rows = self._query(
            "sys_update_xml",
            f"update_set.application={scope}^update_set.is_default=false",
            "sys_id",
            limit=1,
        )
        return bool(rows)

    def display_name(self, package_id: str) -> str:
        if package_id not in self._names:
            self._package(package_id)
        return self._names.get(package_id, package_id)

    def list_available_updates(self) -> list[PackageCandidate]:
        """List installed packages with a newer published version.

        Returns:
            One candidate per package, targeting its latest published version.
        """
        candidates = []
        packages = self._query(
            "sys_store_app",
            "active=true^update_available=true",
            "sys_id,name,version,vendor",
        )
        for package in packages:
            package_id = package["sys_id"]
            latest = self._query(
                "sys_app_version",
                f"source_app_id={package_id}^ORDERBYDESCversion",
                "sys_id,version",
                limit=1,
            )
            if not latest:
                continue
            self._names[package_id] = package.get("name") or package_id
            candidates.append(
                PackageCandidate(
                    candidate_id=latest[0]["sys_id"],
                    package_id=package_id,
                    package_name=package.get("name") or package_id,
                    from_version=package.get("version") or "",
                    to_version=latest[0].get("version") or "",
                    vendor=package.get("vendor") or "",
                )
            )
        return candidates
