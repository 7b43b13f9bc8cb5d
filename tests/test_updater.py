import gzip
import io
import tarfile
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import httpx
import pytest

from geoip_api.errors import ProviderNotFoundError, UpdateError
from geoip_api.logger import logger
from geoip_api.updater import BACKUPS_TO_KEEP, DatabaseUpdater, _previous_month
from tests.common import make_settings

NOW = datetime(2024, 5, 15, 12, 0, 0)
DATABASE_BYTES = b"mmdb-payload"


def _client_factory(handler: Callable[[httpx.Request], httpx.Response], seen: list[str]) -> Callable[..., httpx.Client]:
    def recording_handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return handler(request)

    def factory(**kwargs) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(recording_handler), **kwargs)

    return factory


def _accept_all(path: Path) -> None:
    return None


def _reject_bad_payload(path: Path) -> None:
    if path.read_bytes() != DATABASE_BYTES:
        raise UpdateError(f"Downloaded file {path.name} is not a valid database")


def _maxmind_archive(edition: str) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, data in ((f"{edition}_20240510/COPYRIGHT.txt", b"(c)"), (f"{edition}_20240510/{edition}.mmdb", DATABASE_BYTES)):
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def _updater(tmp_path: Path, handler, seen: list[str] | None = None, verifier=_accept_all, **settings) -> DatabaseUpdater:
    return DatabaseUpdater(
        make_settings(tmp_path, **settings),
        client_factory=_client_factory(handler, seen if seen is not None else []),
        verifier=verifier,
        clock=lambda: NOW,
    )


def test_previous_month_wraps_year() -> None:
    assert _previous_month(datetime(2024, 5, 1)) == "2024-04"
    assert _previous_month(datetime(2024, 1, 1)) == "2023-12"


def test_unknown_provider_is_rejected(tmp_path: Path) -> None:
    updater = _updater(tmp_path, lambda request: httpx.Response(404))
    with pytest.raises(ProviderNotFoundError):
        updater.update("ipinfo")


def test_dbip_update_falls_back_to_previous_month(tmp_path: Path) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if "2024-05" in request.url.path:
            return httpx.Response(404)
        return httpx.Response(200, content=gzip.compress(DATABASE_BYTES))

    report = _updater(tmp_path, handler, seen).update("dbip")

    assert report.success
    assert report.updated == [
        "dbip/dbip-city-lite.mmdb",
        "dbip/dbip-asn-lite.mmdb",
        "dbip/dbip-country-lite.mmdb",
    ]
    assert (tmp_path / "dbip" / "dbip-city-lite.mmdb").read_bytes() == DATABASE_BYTES
    assert seen[:2] == [
        "https://download.db-ip.com/free/dbip-city-lite-2024-05.mmdb.gz",
        "https://download.db-ip.com/free/dbip-city-lite-2024-04.mmdb.gz",
    ]
    assert not list((tmp_path / "dbip").glob(".*staging*"))


def test_dbip_unavailable_in_both_months_is_an_error(tmp_path: Path) -> None:
    report = _updater(tmp_path, lambda request: httpx.Response(404)).update("dbip")

    assert not report.success
    assert len(report.errors) == 3
    assert "not available" in report.errors[0]
    assert not (tmp_path / "dbip" / "dbip-city-lite.mmdb").exists()


def test_existing_files_are_skipped_without_force(tmp_path: Path) -> None:
    database_dir = tmp_path / "dbip"
    database_dir.mkdir()
    for name in ("dbip-city-lite.mmdb", "dbip-asn-lite.mmdb", "dbip-country-lite.mmdb"):
        (database_dir / name).write_bytes(b"old")
    seen: list[str] = []

    report = _updater(tmp_path, lambda request: httpx.Response(500), seen).update("dbip")

    assert report.success
    assert report.updated == []
    assert len(report.skipped) == 3
    assert seen == []


def test_forced_update_backs_up_current_files(tmp_path: Path) -> None:
    database_dir = tmp_path / "dbip"
    database_dir.mkdir()
    (database_dir / "dbip-city-lite.mmdb").write_bytes(b"old")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=gzip.compress(DATABASE_BYTES))

    report = _updater(tmp_path, handler).update("dbip", force=True)

    assert report.success
    backup = tmp_path / "backup" / "dbip_20240515_120000" / "dbip-city-lite.mmdb"
    assert backup.read_bytes() == b"old"
    assert (database_dir / "dbip-city-lite.mmdb").read_bytes() == DATABASE_BYTES


def test_no_backup_option(tmp_path: Path) -> None:
    database_dir = tmp_path / "dbip"
    database_dir.mkdir()
    (database_dir / "dbip-city-lite.mmdb").write_bytes(b"old")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=gzip.compress(DATABASE_BYTES))

    _updater(tmp_path, handler).update("dbip", force=True, backup=False)

    assert not (tmp_path / "backup").exists()


def test_old_backups_are_pruned(tmp_path: Path) -> None:
    for day in range(1, BACKUPS_TO_KEEP + 2):
        (tmp_path / "backup" / f"dbip_202404{day:02d}_000000").mkdir(parents=True)
    database_dir = tmp_path / "dbip"
    database_dir.mkdir()
    (database_dir / "dbip-city-lite.mmdb").write_bytes(b"old")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=gzip.compress(DATABASE_BYTES))

    _updater(tmp_path, handler).update("dbip", force=True)

    backups = sorted(path.name for path in (tmp_path / "backup").iterdir())
    assert len(backups) == BACKUPS_TO_KEEP
    assert backups[-1] == "dbip_20240515_120000"
    assert "dbip_20240401_000000" not in backups


def test_failed_verification_keeps_live_file(tmp_path: Path) -> None:
    database_dir = tmp_path / "dbip"
    database_dir.mkdir()
    (database_dir / "dbip-city-lite.mmdb").write_bytes(b"old")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=gzip.compress(b"truncated"))

    report = _updater(tmp_path, handler, verifier=_reject_bad_payload).update("dbip", force=True, backup=False)

    assert not report.success
    assert report.updated == []
    assert (database_dir / "dbip-city-lite.mmdb").read_bytes() == b"old"
    assert not list(database_dir.glob(".*staging*"))


def test_maxmind_skipped_without_license_key(tmp_path: Path) -> None:
    seen: list[str] = []

    report = _updater(tmp_path, lambda request: httpx.Response(500), seen).update("maxmind")

    assert report.success
    assert report.skipped == [
        "maxmind/GeoLite2-City.mmdb",
        "maxmind/GeoLite2-ASN.mmdb",
        "maxmind/GeoLite2-Country.mmdb",
    ]
    assert seen == []


def test_maxmind_update_extracts_database_from_archive(tmp_path: Path) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        edition = request.url.params["edition_id"]
        return httpx.Response(200, content=_maxmind_archive(edition))

    report = _updater(tmp_path, handler, seen, maxmind_license_key="licence").update("maxmind")

    assert report.success
    assert (tmp_path / "maxmind" / "GeoLite2-ASN.mmdb").read_bytes() == DATABASE_BYTES
    assert all("license_key=licence" in url for url in seen)


def test_maxmind_archive_without_database_is_an_error(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w:gz"):
            pass
        return httpx.Response(200, content=buffer.getvalue())

    report = _updater(tmp_path, handler, maxmind_license_key="licence").update("maxmind")

    assert not report.success
    assert "No .mmdb file found" in report.errors[0]


def test_network_errors_are_reported(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    report = _updater(tmp_path, handler).update("all")

    assert not report.success
    assert any("connection refused" in error for error in report.errors)
    # MaxMind is skipped (no license key); only DB-IP files fail.
    assert all(error.startswith("dbip/") for error in report.errors)


def test_license_key_is_masked_in_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    logged: list[str] = []
    monkeypatch.setattr(logger, "error", logged.append)

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError(f"failed to fetch {request.url}", request=request)

    report = _updater(tmp_path, handler, maxmind_license_key="s3cr3t-licence").update("maxmind")

    assert len(report.errors) == 3
    assert all("license_key=***" in error for error in report.errors)
    assert not any("s3cr3t-licence" in error for error in report.errors)
    assert len(logged) == 3
    assert not any("s3cr3t-licence" in message for message in logged)


def test_requests_identify_the_updater(tmp_path: Path) -> None:
    agents: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        agents.append(request.headers["user-agent"])
        return httpx.Response(200, content=gzip.compress(DATABASE_BYTES))

    _updater(tmp_path, handler).update("dbip")

    assert set(agents) == {"GeoIP-API-Updater/1.0"}
