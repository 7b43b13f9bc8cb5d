"""Database refresh job for the MaxMind GeoLite2 and DB-IP Lite files.

Files are downloaded into a staging file next to the live database, opened
once to verify them, and then moved into place with os.replace so
readers never see a partially written file.
"""

import gzip
import os
import re
import shutil
import tarfile
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import geoip2.database
import httpx
import maxminddb

from geoip_api.config import ProviderConfig, Settings
from geoip_api.errors import ProviderNotFoundError, UpdateError
from geoip_api.logger import logger

DBIP_URL = "https://download.db-ip.com/free/dbip-{kind}-lite-{month}.mmdb.gz"
MAXMIND_URL = "https://download.maxmind.com/app/geoip_download?edition_id={edition}&license_key={key}&suffix=tar.gz"
MAXMIND_EDITIONS = {"city": "GeoLite2-City", "asn": "GeoLite2-ASN", "country": "GeoLite2-Country"}
BACKUPS_TO_KEEP = 5
USER_AGENT = "GeoIP-API-Updater/1.0"
DOWNLOAD_TIMEOUT_SECONDS = 300.0
LICENSE_KEY_PARAM = re.compile(r"(license_key=)[^&\s'\"]+")


@dataclass
class UpdateReport:
    updated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def verify_mmdb(path: Path) -> None:
    """Open the file as a MaxMind DB to make sure it is usable."""
    try:
        reader = geoip2.database.Reader(str(path))
    except (OSError, maxminddb.InvalidDatabaseError, ValueError) as exc:
        raise UpdateError(f"Downloaded file {path.name} is not a valid database: {exc}") from exc
    reader.close()


def _previous_month(now: datetime) -> str:
    year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
    return f"{year:04d}-{month:02d}"


def _redact(message: str, secret: str | None) -> str:
    """Mask the MaxMind license key in error text that may quote the download URL."""
    message = LICENSE_KEY_PARAM.sub(r"\1***", message)
    if secret:
        message = message.replace(secret, "***")
    return message


class DatabaseUpdater:
    """Downloads, verifies and installs provider database files."""

    def __init__(
        self,
        settings: Settings,
        client_factory: Callable[..., httpx.Client] = httpx.Client,
        verifier: Callable[[Path], None] = verify_mmdb,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory
        self._verifier = verifier
        self._clock = clock
        self._backup_dir = Path(settings.storage_dir) / "backup"

    def provider_config(self, provider_id: str) -> ProviderConfig:
        return self._settings.provider_configs()[provider_id]

    def providers_for(self, provider: str) -> list[str]:
        configs = self._settings.provider_configs()
        if provider == "all":
            return list(configs)
        if provider not in configs:
            raise ProviderNotFoundError(f"Invalid provider: {provider}. Use one of: all, {', '.join(configs)}")
        return [provider]

    def update(self, provider: str = "all", force: bool = False, backup: bool = True) -> UpdateReport:
        provider_ids = self.providers_for(provider)
        configs = self._settings.provider_configs()
        report = UpdateReport()
        logger.info(f"Starting GeoIP database update provider={provider} force={force} backup={backup}")

        with self._client_factory(
            timeout=DOWNLOAD_TIMEOUT_SECONDS,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        ) as client:
            for provider_id in provider_ids:
                self._update_provider(client, provider_id, configs[provider_id], force, backup, report)

        logger.info(
            f"GeoIP database update finished provider={provider} updated={report.updated} "
            f"skipped={report.skipped} errors={report.errors}"
        )
        return report

    def _update_provider(
        self,
        client: httpx.Client,
        provider_id: str,
        config: ProviderConfig,
        force: bool,
        backup: bool,
        report: UpdateReport,
    ) -> None:
        targets = self._targets(config)
        pending = {kind: path for kind, path in targets.items() if force or not path.exists()}
        for path in targets.values():
            if not force and path.exists():
                report.skipped.append(f"{provider_id}/{path.name}")
        if not pending:
            return

        if provider_id == "maxmind" and not self._settings.maxmind_license_key:
            logger.warning("MaxMind license key not configured, skipping MaxMind update")
            report.skipped.extend(f"{provider_id}/{path.name}" for path in pending.values())
            return

        if backup:
            self._backup(provider_id, [path for path in pending.values() if path.exists()])

        for kind, destination in pending.items():
            # Staged next to the destination so the final rename stays on one filesystem.
            destination.parent.mkdir(parents=True, exist_ok=True)
            staged = destination.with_name(f".{destination.name}.staging")
            try:
                if provider_id == "maxmind":
                    self._fetch_maxmind(client, kind, staged)
                else:
                    self._fetch_dbip(client, kind, staged)
                self._install(staged, destination)
            except (httpx.HTTPError, OSError, tarfile.TarError, UpdateError) as exc:
                error = _redact(str(exc), self._settings.maxmind_license_key)
                logger.error(f"Failed to update database provider={provider_id} file={destination.name} error={error}")
                report.errors.append(f"{provider_id}/{destination.name}: {error}")
                staged.unlink(missing_ok=True)
            else:
                report.updated.append(f"{provider_id}/{destination.name}")

    @staticmethod
    def _targets(config: ProviderConfig) -> dict[str, Path]:
        targets = {"city": Path(config.city_database)}
        if config.asn_database is not None:
            targets["asn"] = Path(config.asn_database)
        if config.country_database is not None:
            targets["country"] = Path(config.country_database)
        return targets

    def _fetch_dbip(self, client: httpx.Client, kind: str, staged: Path) -> None:
        now = self._clock()
        archive = staged.with_name(staged.name + ".gz")
        try:
            for month in (f"{now.year:04d}-{now.month:02d}", _previous_month(now)):
                if self._download(client, DBIP_URL.format(kind=kind, month=month), archive):
                    break
                logger.warning(f"DB-IP {kind} not available for month={month}")
            else:
                raise UpdateError(f"DB-IP {kind} database is not available for download")

            with gzip.open(archive, "rb") as source, open(staged, "wb") as target:
                shutil.copyfileobj(source, target)
        finally:
            archive.unlink(missing_ok=True)

    def _fetch_maxmind(self, client: httpx.Client, kind: str, staged: Path) -> None:
        edition = MAXMIND_EDITIONS[kind]
        archive = staged.with_name(staged.name + ".tar.gz")
        url = MAXMIND_URL.format(edition=edition, key=self._settings.maxmind_license_key)
        try:
            if not self._download(client, url, archive):
                raise UpdateError(f"MaxMind {edition} download failed")
            with tarfile.open(archive, "r:gz") as tar:
                member = next((m for m in tar.getmembers() if m.isfile() and m.name.endswith(".mmdb")), None)
                if member is None:
                    raise UpdateError(f"No .mmdb file found in {edition} archive")
                source = tar.extractfile(member)
                if source is None:
                    raise UpdateError(f"Cannot read {member.name} from {edition} archive")
                with source, open(staged, "wb") as target:
                    shutil.copyfileobj(source, target)
        finally:
            archive.unlink(missing_ok=True)

    @staticmethod
    def _download(client: httpx.Client, url: str, destination: Path) -> bool:
        """Stream `url` into `destination`; return False on a non-200 answer."""
        with client.stream("GET", url) as response:
            if response.status_code != httpx.codes.OK:
                return False
            with open(destination, "wb") as target:
                for chunk in response.iter_bytes():
                    target.write(chunk)
        return True

    def _install(self, staged: Path, destination: Path) -> None:
        self._verifier(staged)
        os.replace(staged, destination)
        os.chmod(destination, 0o644)
        logger.info(f"Installed database file={destination}")

    def _backup(self, provider_id: str, files: list[Path]) -> None:
        if not files:
            return
        target_dir = self._backup_dir / f"{provider_id}_{self._clock():%Y%m%d_%H%M%S}"
        target_dir.mkdir(parents=True, exist_ok=True)
        for path in files:
            shutil.copy2(path, target_dir / path.name)
        logger.info(f"Backed up databases provider={provider_id} backup={target_dir.name}")
        self._prune_backups(provider_id)

    def _prune_backups(self, provider_id: str) -> None:
        backups = sorted(
            (path for path in self._backup_dir.glob(f"{provider_id}_*") if path.is_dir()),
            reverse=True,
        )
        for old in backups[BACKUPS_TO_KEEP:]:
            shutil.rmtree(old)
            logger.info(f"Removed old backup backup={old.name}")
