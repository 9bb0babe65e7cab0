"""Merge per-architecture artifacts into version-stamped bundles.

ArtifactAssembler is the synchronization barrier between building and
packaging: it blocks until every BuildJob of a merge group is terminal and
only then decides whether the bundle can exist at all. A bundle is built in
a staging directory and renamed into ``dist/<language>/<name>-<version>``
in one step, so a partial bundle is never visible.
"""

from __future__ import annotations

import json
import os
import shutil
import uuid
from collections.abc import Iterable
from pathlib import Path

import structlog

from bindery_core.assembly.slices import write_container
from bindery_core.checksums import sha256_file, tree_checksums
from bindery_core.config import MergeGroupConfig, PipelineConfig
from bindery_core.errors import AssemblyError, MissingArchitecture
from bindery_core.models import (
    Artifact,
    BuildJob,
    Bundle,
    BundleKind,
    BundleManifest,
    SliceEntry,
)
from bindery_core.process import CancellationToken, render

logger = structlog.get_logger(__name__)

MANIFEST_FILE = "manifest.json"
BINDINGS_DIR = "bindings"
NATIVE_DIR = "native"
CONTAINER_SUFFIX = ".fat"


class ArtifactAssembler:
    """Assemble bundles from succeeded BuildJobs.

    Attributes:
        config: Pipeline configuration; ``config.version`` is stamped on
            every bundle this assembler produces.

    Example:
        >>> assembler = ArtifactAssembler(config)
        >>> bundle = assembler.assemble(group, jobs, bindings_dir)
        >>> bundle.path.name
        'BitcoinDevKit-1.2.0'
    """

    def __init__(self, config: PipelineConfig, token: CancellationToken | None = None) -> None:
        self.config = config
        self.token = token or CancellationToken()
        self._log = logger.bind(component="artifact_assembler")

    @property
    def version(self) -> str:
        return self.config.version

    def bundle_path(self, group: MergeGroupConfig) -> Path:
        return self.config.workspace.dist_dir / group.language / f"{group.name}-{self.version}"

    def assemble(
        self,
        group: MergeGroupConfig,
        jobs: Iterable[BuildJob],
        bindings: Path | None = None,
    ) -> Bundle:
        """Assemble one bundle.

        Args:
            group: Merge group to assemble.
            jobs: BuildJobs of the run; only the group's targets are used.
            bindings: Directory of generated bindings to include.

        Returns:
            The finished Bundle.

        Raises:
            MissingArchitecture: A declared target has no succeeded job.
            AssemblyError: Constituents disagree on the ABI contract or an
                artifact changed after it was built.
            PipelineCancelled: The run was cancelled.
        """
        log = self._log.bind(bundle=group.name, language=group.language, kind=group.kind.value)
        by_id = {job.target_id: job for job in jobs}
        members = [by_id[t] for t in group.targets if t in by_id]

        for job in members:
            job.wait()
        self.token.raise_if_cancelled("assemble", group.name)

        missing = [t for t in group.targets if t not in by_id or not by_id[t].succeeded]
        if missing:
            log.error("bundle_missing_architectures", missing=missing)
            raise MissingArchitecture(group.name, missing, subject=group.language)

        artifacts = [job.artifact for job in members if job.artifact is not None]
        contract = self._check_constituents(group, members)

        dist = self.config.workspace.dist_dir / group.language
        dist.mkdir(parents=True, exist_ok=True)
        staging = dist / f".staging-{uuid.uuid4().hex}"
        staging.mkdir()
        try:
            slices = self._layout(group, members, staging)
            if bindings is not None and bindings.is_dir():
                shutil.copytree(bindings, staging / BINDINGS_DIR)

            manifest = BundleManifest(
                name=group.name,
                language=group.language,
                version=self.version,
                kind=group.kind,
                abi_contract=contract,
                platform_tag=group.platform_tag,
                files=tree_checksums(staging),
                slices=slices,
            )
            (staging / MANIFEST_FILE).write_text(
                json.dumps(json.loads(manifest.model_dump_json()), indent=2, sort_keys=True)
            )

            self.token.raise_if_cancelled("assemble", group.name)
            final = self.bundle_path(group)
            self._swap_into_place(staging, final)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        log.info("bundle_assembled", path=str(final), files=len(manifest.files), version=self.version)
        return Bundle(
            name=group.name,
            package=group.package_name,
            language=group.language,
            version=self.version,
            kind=group.kind,
            path=final,
            artifacts=artifacts,
            manifest=manifest,
        )

    def _check_constituents(self, group: MergeGroupConfig, jobs: list[BuildJob]) -> str:
        contracts: set[str] = set()
        for job in jobs:
            artifact = job.artifact
            if artifact is None:
                raise MissingArchitecture(group.name, [job.target_id], subject=group.language)
            if not artifact.abi_tag.matches(job.target):
                raise AssemblyError(
                    f"Artifact for {job.target_id} is tagged {artifact.abi_tag}",
                    subject=group.language,
                )
            if not artifact.path.is_file() or sha256_file(artifact.path) != artifact.checksum:
                raise AssemblyError(
                    f"Artifact for {job.target_id} changed or vanished after it was built",
                    subject=group.language,
                    internal_details=str(artifact.path),
                )
            contracts.add(artifact.abi_tag.contract_version)

        if len(contracts) != 1:
            raise AssemblyError(
                f"Bundle '{group.name}' mixes ABI contracts: {', '.join(sorted(contracts))}",
                subject=group.language,
            )
        return contracts.pop()

    def _layout(
        self, group: MergeGroupConfig, jobs: list[BuildJob], staging: Path
    ) -> list[SliceEntry]:
        native = staging / NATIVE_DIR
        native.mkdir()

        if group.kind == BundleKind.SLICE:
            payloads: dict[str, bytes] = {}
            for job in jobs:
                arch = job.target.architecture
                if arch in payloads:
                    raise AssemblyError(
                        f"Slice bundle '{group.name}' has two targets for {arch}",
                        subject=group.language,
                    )
                payloads[arch] = _artifact(job).read_bytes()
            return write_container(native / f"{self.config.library}{CONTAINER_SUFFIX}", payloads)

        if group.kind == BundleKind.RESOURCE_TREE:
            used: dict[str, str] = {}
            for job in jobs:
                key = self.resource_key(group, job)
                if key in used:
                    raise AssemblyError(
                        f"Targets {used[key]} and {job.target_id} share resource key '{key}'",
                        subject=group.language,
                    )
                used[key] = job.target_id
                (native / key).mkdir(parents=True)
                shutil.copy2(_artifact(job).path, native / key / job.target.library_file)
            return []

        (job,) = jobs
        shutil.copy2(_artifact(job).path, native / job.target.library_file)
        return []

    def resource_key(self, group: MergeGroupConfig, job: BuildJob) -> str:
        """Resource-tree directory for one target, e.g. ``darwin-aarch64``."""
        explicit = group.resource_keys.get(job.target_id)
        if explicit:
            return explicit
        return render(
            group.key_template,
            {
                "platform": job.target.platform,
                "architecture": job.target.architecture,
                "target": job.target_id,
            },
        )

    def _swap_into_place(self, staging: Path, final: Path) -> None:
        if not final.exists():
            os.replace(staging, final)
            return
        retired = final.with_name(f".retired-{uuid.uuid4().hex}")
        os.replace(final, retired)
        try:
            os.replace(staging, final)
        except OSError:
            os.replace(retired, final)
            raise
        shutil.rmtree(retired, ignore_errors=True)


def _artifact(job: BuildJob) -> Artifact:
    if job.artifact is None:
        msg = f"BuildJob {job.target_id} has no artifact"
        raise AssemblyError(msg)
    return job.artifact
