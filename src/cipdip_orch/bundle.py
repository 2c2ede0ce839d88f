from __future__ import annotations

import fnmatch
import hashlib
import json
import shutil
import zipfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path, PurePosixPath
from typing import IO, Any

from cipdip_orch.errors import BundleError
from cipdip_orch.transports.base import EventHook

HASHES_FILE = "hashes.txt"
MANIFEST_FILE = "manifest.yaml"
SUMMARY_FILE = "summary.json"
COMMAND_FILE = "command.txt"
STDOUT_FILE = "stdout.log"
RESOLVED_FILE = "resolved.yaml"
METRICS_FILE = "metrics.json"
ROLE_FILES = (COMMAND_FILE, STDOUT_FILE, RESOLVED_FILE, SUMMARY_FILE, METRICS_FILE)
HASH_PREFIX = "sha256:"
_CHUNK = 1024 * 1024


def _hash_stream(handle: IO[bytes]) -> str:
    digest = hashlib.sha256()
    for chunk in iter(lambda: handle.read(_CHUNK), b""):
        digest.update(chunk)
    return f"{HASH_PREFIX}{digest.hexdigest()}"


def hash_file(path: Path) -> str:
    with path.open("rb") as handle:
        return _hash_stream(handle)


def read_hashes(text: str) -> tuple[dict[str, str], list[str]]:
    """Parses ``hashes.txt`` into its entries and the lines that did not parse."""
    hashes: dict[str, str] = {}
    malformed: list[str] = []
    for number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue
        checksum, sep, relpath = line.partition("  ")
        relpath = relpath.strip()
        if not sep or not relpath or not checksum.startswith(HASH_PREFIX):
            malformed.append(f"line {number}: {raw_line!r}")
            continue
        hashes[relpath] = checksum
    return hashes, malformed


def parse_hashes(text: str) -> dict[str, str]:
    return read_hashes(text)[0]


def format_hashes(hashes: Mapping[str, str]) -> str:
    return "".join(f"{hashes[relpath]}  {relpath}\n" for relpath in sorted(hashes))


def _dump_json(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2, sort_keys=False, default=str) + "\n"


@dataclass(slots=True)
class RoleArtifacts:
    role: str
    command: str = ""
    stdout: str = ""
    resolved: str = ""
    summary: dict[str, Any] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)
    extra_files: dict[str, Path] = field(default_factory=dict)


class BundleBuilder:
    """Writes a run directory and seals it with ``hashes.txt``."""

    def __init__(self, bundle_format: str = "dir", *, event_hook: EventHook | None = None) -> None:
        if bundle_format not in ("dir", "zip"):
            raise BundleError(bundle_format, "unknown bundle format (expected dir or zip)")
        self.bundle_format = bundle_format
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build(
        self,
        run_dir: Path,
        role_artifacts: Iterable[RoleArtifacts],
        summary: Mapping[str, Any],
        *,
        manifest_text: str | None = None,
    ) -> Path:
        try:
            run_dir.mkdir(parents=True, exist_ok=True)
            if manifest_text is not None:
                (run_dir / MANIFEST_FILE).write_text(manifest_text, encoding="utf-8")
            (run_dir / SUMMARY_FILE).write_text(_dump_json(dict(summary)), encoding="utf-8")
            for artifacts in role_artifacts:
                self._write_role(run_dir, artifacts)
            hashes = self._compute_hashes(run_dir)
            (run_dir / HASHES_FILE).write_text(format_hashes(hashes), encoding="utf-8")
        except OSError as exc:
            raise BundleError(str(run_dir), f"cannot write bundle: {exc}") from exc

        self._emit({"event": "bundle_written", "path": str(run_dir), "files": len(hashes)})
        if self.bundle_format == "zip":
            return self._archive(run_dir)
        return run_dir

    def _write_role(self, run_dir: Path, artifacts: RoleArtifacts) -> None:
        role_dir = run_dir / artifacts.role
        role_dir.mkdir(parents=True, exist_ok=True)
        (role_dir / COMMAND_FILE).write_text(artifacts.command, encoding="utf-8")
        (role_dir / STDOUT_FILE).write_text(artifacts.stdout, encoding="utf-8")
        (role_dir / RESOLVED_FILE).write_text(artifacts.resolved, encoding="utf-8")
        (role_dir / SUMMARY_FILE).write_text(_dump_json(artifacts.summary), encoding="utf-8")
        (role_dir / METRICS_FILE).write_text(_dump_json(artifacts.metrics), encoding="utf-8")
        for name, source in artifacts.extra_files.items():
            if name in ROLE_FILES:
                raise BundleError(name, f"collected file would overwrite {artifacts.role}/{name}")
            target = role_dir / name
            if source.resolve() != target.resolve():
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)

    @staticmethod
    def _compute_hashes(run_dir: Path) -> dict[str, str]:
        hashes: dict[str, str] = {}
        for path in sorted(run_dir.rglob("*")):
            if not path.is_file():
                continue
            relpath = path.relative_to(run_dir).as_posix()
            if relpath == HASHES_FILE:
                continue
            hashes[relpath] = hash_file(path)
        return hashes

    def _archive(self, run_dir: Path) -> Path:
        archive_path = run_dir.parent / f"{run_dir.name}.zip"
        try:
            with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                for path in sorted(run_dir.rglob("*")):
                    if path.is_file():
                        arcname = (PurePosixPath(run_dir.name) / path.relative_to(run_dir).as_posix())
                        archive.write(path, str(arcname))
            shutil.rmtree(run_dir)
        except OSError as exc:
            raise BundleError(str(archive_path), f"cannot archive bundle: {exc}") from exc
        self._emit({"event": "bundle_archived", "path": str(archive_path)})
        return archive_path


class CheckStatus(StrEnum):
    MATCH = "match"
    MISMATCH = "mismatch"
    MISSING = "missing"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class FileCheck:
    path: str
    status: CheckStatus
    expected: str = ""
    actual: str = ""


@dataclass(slots=True)
class VerifyOptions:
    check_hashes: bool = True
    skip_patterns: list[str] = field(default_factory=list)
    max_file_bytes: int | None = None
    allow_extra_files: bool = True
    strict_schema: bool = True

    def skips(self, relpath: str) -> bool:
        name = PurePosixPath(relpath).name
        return any(
            fnmatch.fnmatch(relpath, pattern) or fnmatch.fnmatch(name, pattern)
            for pattern in self.skip_patterns
        )


@dataclass(slots=True)
class VerifyResult:
    path: str
    checks: list[FileCheck] = field(default_factory=list)
    extra_files: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    extra_files_allowed: bool = True

    def _with(self, status: CheckStatus) -> list[str]:
        return [check.path for check in self.checks if check.status is status]

    @property
    def mismatched(self) -> list[str]:
        return self._with(CheckStatus.MISMATCH)

    @property
    def missing(self) -> list[str]:
        return self._with(CheckStatus.MISSING)

    @property
    def skipped(self) -> list[str]:
        return self._with(CheckStatus.SKIPPED)

    @property
    def matched(self) -> list[str]:
        return self._with(CheckStatus.MATCH)

    @property
    def ok(self) -> bool:
        if self.mismatched or self.missing or self.errors:
            return False
        return self.extra_files_allowed or not self.extra_files

    def problems(self) -> list[str]:
        found = [f"mismatch {path}" for path in self.mismatched]
        found.extend(f"missing {path}" for path in self.missing)
        found.extend(self.errors)
        if not self.extra_files_allowed:
            found.extend(f"extra {path}" for path in self.extra_files)
        return found

    def format_result(self) -> str:
        lines = [f"Bundle verification: {'PASSED' if self.ok else 'FAILED'}"]
        lines.append(f"Path: {self.path}")
        lines.append(
            f"Files listed: {len(self.checks)} "
            f"(match {len(self.matched)}, mismatch {len(self.mismatched)}, "
            f"missing {len(self.missing)}, skipped {len(self.skipped)})"
        )
        sections = (
            ("Hash mismatches", self.mismatched),
            ("Missing files", self.missing),
            ("Extra files", self.extra_files),
            ("Errors", self.errors),
            ("Warnings", self.warnings),
        )
        for title, items in sections:
            if items:
                lines.append("")
                lines.append(f"{title}:")
                lines.extend(f"  - {item}" for item in items)
        return "\n".join(lines) + "\n"


class Bundle:
    """A sealed run bundle, either a directory or a ``.zip`` archive.

    Opening reads only ``hashes.txt``; file contents are read on demand.
    """

    def __init__(
        self,
        path: Path,
        hashes: dict[str, str],
        *,
        member_prefix: str | None = None,
        malformed: list[str] | None = None,
    ) -> None:
        self.path = path
        self.hashes = hashes
        self.malformed = malformed or []
        self._member_prefix = member_prefix

    @property
    def is_archive(self) -> bool:
        return self._member_prefix is not None

    @property
    def run_id(self) -> str:
        if self._member_prefix:
            return self._member_prefix.rstrip("/")
        if self.path.suffix == ".zip":
            return self.path.stem
        return self.path.name

    @property
    def files(self) -> list[str]:
        return sorted(self.hashes)

    @classmethod
    def open(cls, path: Path) -> Bundle:
        if path.is_dir():
            hashes_path = path / HASHES_FILE
            try:
                text = hashes_path.read_text(encoding="utf-8")
            except FileNotFoundError as exc:
                raise BundleError(str(path), f"missing {HASHES_FILE}") from exc
            except OSError as exc:
                raise BundleError(str(path), f"cannot read {HASHES_FILE}: {exc}") from exc
            hashes, malformed = read_hashes(text)
            return cls(path, hashes, malformed=malformed)
        if path.is_file() and zipfile.is_zipfile(path):
            with zipfile.ZipFile(path) as archive:
                candidates = [
                    name for name in archive.namelist() if PurePosixPath(name).name == HASHES_FILE
                ]
                if not candidates:
                    raise BundleError(str(path), f"missing {HASHES_FILE}")
                member = min(candidates, key=lambda name: name.count("/"))
                prefix = member[: -len(HASHES_FILE)]
                text = archive.read(member).decode("utf-8")
            hashes, malformed = read_hashes(text)
            return cls(path, hashes, member_prefix=prefix, malformed=malformed)
        raise BundleError(str(path), "not a bundle directory or zip archive")

    def read_text(self, relpath: str) -> str:
        if self._member_prefix is None:
            return (self.path / relpath).read_text(encoding="utf-8")
        with zipfile.ZipFile(self.path) as archive:
            return archive.read(self._member_prefix + relpath).decode("utf-8")

    def read_summary(self, role: str | None = None) -> dict[str, Any]:
        relpath = f"{role}/{SUMMARY_FILE}" if role else SUMMARY_FILE
        try:
            return json.loads(self.read_text(relpath))
        except (OSError, KeyError, json.JSONDecodeError) as exc:
            raise BundleError(relpath, f"cannot read summary: {exc}") from exc

    def verify(self, options: VerifyOptions | None = None) -> VerifyResult:
        options = options or VerifyOptions()
        if self._member_prefix is None:
            return self._verify_dir(options)
        return self._verify_zip(options)

    def _check(
        self,
        relpath: str,
        expected: str,
        options: VerifyOptions,
        size: int | None,
        digest: Any,
    ) -> FileCheck:
        if options.skips(relpath):
            return FileCheck(relpath, CheckStatus.SKIPPED, expected)
        if size is None:
            return FileCheck(relpath, CheckStatus.MISSING, expected)
        if options.max_file_bytes is not None and size > options.max_file_bytes:
            return FileCheck(relpath, CheckStatus.SKIPPED, expected)
        if not options.check_hashes:
            return FileCheck(relpath, CheckStatus.MATCH, expected)
        actual = digest()
        status = CheckStatus.MATCH if actual == expected else CheckStatus.MISMATCH
        return FileCheck(relpath, status, expected, actual)

    def _verify_dir(self, options: VerifyOptions) -> VerifyResult:
        result = VerifyResult(str(self.path), extra_files_allowed=options.allow_extra_files)
        for relpath in self.files:
            target = self.path / relpath
            size = target.stat().st_size if target.is_file() else None
            result.checks.append(
                self._check(relpath, self.hashes[relpath], options, size, lambda t=target: hash_file(t))
            )
        present = {
            path.relative_to(self.path).as_posix()
            for path in self.path.rglob("*")
            if path.is_file()
        }
        self._finish(result, present, options)
        return result

    def _verify_zip(self, options: VerifyOptions) -> VerifyResult:
        prefix = self._member_prefix or ""
        result = VerifyResult(str(self.path), extra_files_allowed=options.allow_extra_files)
        with zipfile.ZipFile(self.path) as archive:
            members = {
                info.filename[len(prefix):]: info
                for info in archive.infolist()
                if info.filename.startswith(prefix) and not info.is_dir()
            }

            def digest(name: str) -> str:
                with archive.open(prefix + name) as handle:
                    return _hash_stream(handle)

            for relpath in self.files:
                info = members.get(relpath)
                size = info.file_size if info is not None else None
                result.checks.append(
                    self._check(relpath, self.hashes[relpath], options, size, lambda n=relpath: digest(n))
                )
        self._finish(result, set(members), options)
        return result

    def _finish(self, result: VerifyResult, present: set[str], options: VerifyOptions) -> None:
        result.extra_files = sorted(present - set(self.hashes) - {HASHES_FILE})
        result.errors.extend(
            f"{HASHES_FILE} {entry}: expected 'sha256:<hex>  <path>'" for entry in self.malformed
        )
        summary = self._summary_warnings(result)
        if options.strict_schema:
            roles = summary.get("roles")
            self._check_schema(result, present, roles if isinstance(roles, list) else [], options)

    def _check_schema(
        self,
        result: VerifyResult,
        present: set[str],
        summary_roles: Iterable[Any],
        options: VerifyOptions,
    ) -> None:
        """Requires the fixed layout even when ``hashes.txt`` omits it."""
        listed = present | set(self.hashes)
        roles = {relpath.split("/", 1)[0] for relpath in listed if "/" in relpath}
        roles.update(
            role for role in summary_roles if isinstance(role, str) and role and "/" not in role
        )
        required = [MANIFEST_FILE, SUMMARY_FILE]
        required.extend(f"{role}/{name}" for role in sorted(roles) for name in ROLE_FILES)
        for relpath in required:
            if relpath in self.hashes or options.skips(relpath):
                continue
            if relpath in present:
                result.errors.append(f"{relpath}: not listed in {HASHES_FILE}")
            else:
                result.checks.append(FileCheck(relpath, CheckStatus.MISSING))

    def _summary_warnings(self, result: VerifyResult) -> dict[str, Any]:
        try:
            summary = self.read_summary()
        except BundleError as exc:
            result.warnings.append(str(exc))
            return {}
        if not isinstance(summary, dict):
            result.warnings.append(f"{SUMMARY_FILE}: not a JSON object")
            return {}
        if not summary.get("run_id"):
            result.warnings.append(f"{SUMMARY_FILE}: run_id is empty")
        if not summary.get("status"):
            result.warnings.append(f"{SUMMARY_FILE}: status is empty")
        return summary
