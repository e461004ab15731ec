# runner.py
from __future__ import annotations

import json
import os
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .actions.registry import get_action
from .artifacts import DatasetStore, Workspace
from .backends import Mount, get_backend
from .config import Settings
from .dag import FAILED, OK, build_dag, schedule, topo_levels
from .errors import ArtifactError, BackendUnavailable, JobFailure
from .model import DATASET, Job, Workflow
from .ui.console import Console, get_console
from .validate import check_workflow

# workflow ---> validate ---> schedule ---> job: inputs -> action -> outputs -> commit


def _now_iso(ts: float) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(ts))


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def triggered_by(wf: Workflow, branch: Optional[str]) -> bool:
    """True if a push to `branch` triggers `wf`."""
    return wf.trigger is not None and wf.trigger.matches(branch)


# ----------------------------------------------------------------------
# Per-job execution context (handed to actions)
# ----------------------------------------------------------------------

@dataclass
class JobContext:
    job: Job
    backend: Any
    mounts: List[Mount]
    output_dirs: Dict[str, Path]
    env: Dict[str, str]
    log_path: Path
    workdir: Path

    def log(self, message: str) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("a", encoding="utf-8") as f:
            f.write(message if message.endswith("\n") else message + "\n")

    def execute(self, image: Optional[str], command: Sequence[str]) -> None:
        """Run one command through the backend; non-zero exit fails the job."""
        result = self.backend.run(
            image or "",
            list(command),
            mounts=self.mounts,
            env=self.env,
            log_path=self.log_path,
            workdir=self.workdir,
        )
        if result.exit_code != 0:
            raise JobFailure(
                job=self.job.name,
                exit_code=result.exit_code,
                cmd=" ".join(command),
                log_path=self.log_path,
                tail=result.tail,
            )


# ----------------------------------------------------------------------
# Run records
# ----------------------------------------------------------------------

@dataclass
class ArtifactLocation:
    kind: str   # dataset | volume
    path: Path
    spec: Optional[str] = None  # ref:vN for datasets


@dataclass
class JobRecord:
    status: str = "pending"
    instance_type: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    exit_code: Optional[int] = None
    skip_reason: Optional[str] = None
    log: Optional[str] = None
    datasets: Dict[str, str] = field(default_factory=dict)  # output name -> ref:vN

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


@dataclass
class RunResult:
    run_id: str
    workflow: str
    statuses: Dict[str, str]
    jobs: Dict[str, JobRecord]
    started_at: float
    finished_at: float
    backend: str
    branch: Optional[str] = None
    commit: Optional[str] = None

    @property
    def ok(self) -> bool:
        return all(s == OK for s in self.statuses.values())

    def to_dict(self) -> Dict[str, Any]:
        jobs = {}
        for name, rec in self.jobs.items():
            d = asdict(rec)
            d["duration"] = rec.duration
            jobs[name] = d
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "backend": self.backend,
            "branch": self.branch,
            "commit": self.commit,
            "started_at": _now_iso(self.started_at),
            "finished_at": _now_iso(self.finished_at),
            "statuses": dict(self.statuses),
            "jobs": jobs,
        }


def load_run(store: DatasetStore, run_id: str) -> Dict[str, Any]:
    path = store.runs_dir / run_id / "run.json"
    if not path.exists():
        raise FileNotFoundError(f"Run not found: {run_id}")
    return json.loads(path.read_text(encoding="utf-8"))


def list_runs(store: DatasetStore) -> List[Dict[str, Any]]:
    if not store.runs_dir.exists():
        return []
    runs = []
    for p in store.runs_dir.glob("*/run.json"):
        runs.append(json.loads(p.read_text(encoding="utf-8")))
    return sorted(runs, key=lambda r: r["started_at"])


# ----------------------------------------------------------------------
# Runner
# ----------------------------------------------------------------------

class WorkflowRunner:
    """
    Runs one workflow once.

    Jobs execute on a thread pool in dependency order. Dataset outputs are
    committed to the store when their job succeeds; volume outputs live in
    the run workspace until the run ends.
    """

    def __init__(
        self,
        wf: Workflow,
        settings: Settings,
        *,
        console: Optional[Console] = None,
        store: Optional[DatasetStore] = None,
        backend: Any = None,
        run_id: Optional[str] = None,
        branch: Optional[str] = None,
        commit: Optional[str] = None,
        print_plan: bool = True,
    ):
        self.wf = wf
        self.settings = settings
        self.console = console or get_console()
        self.store = store or DatasetStore(settings.store_dir, create_missing=settings.create_datasets)
        self.backend = backend or get_backend(settings.backend)
        self.run_id = run_id or time.strftime("%Y%m%d-%H%M%S-") + uuid.uuid4().hex[:8]
        self.branch = branch
        self.commit = commit
        self.print_plan = print_plan

        self.run_dir = self.store.runs_dir / self.run_id
        self.workspace = Workspace(self.run_dir / "work")
        self.records: Dict[str, JobRecord] = {
            j.name: JobRecord(instance_type=wf.instance_type_of(j)) for j in wf.jobs
        }
        self._outputs: Dict[Tuple[str, str], ArtifactLocation] = {}
        self._lock = threading.Lock()

    # ---- inputs / outputs ----

    def _input_mounts(self, job: Job) -> List[Mount]:
        mounts: List[Mount] = []
        for binding in job.inputs:
            if binding.is_job_output:
                with self._lock:
                    loc = self._outputs.get((binding.job, binding.output))
                if loc is None:
                    # validation guarantees the producer is upstream and succeeded
                    raise ArtifactError(binding.source, "upstream output is not available")
                source = loc.path
            else:
                source = self.store.resolve(binding.dataset).path
            mounts.append(Mount(source=source, target=binding.mount_path, read_only=True))
        return mounts

    def _commit_outputs(self, job: Job, output_dirs: Dict[str, Path]) -> None:
        rec = self.records[job.name]
        for decl in job.outputs:
            path = output_dirs[decl.name]
            if decl.type == DATASET:
                latest_before = self._latest_number(decl.ref)
                version = self.store.commit(
                    decl.ref, path, message=f"{self.wf.name}/{job.name} run {self.run_id}"
                )
                reused = version.number == latest_before
                rec.datasets[decl.name] = version.spec
                self.console.print_dataset_committed(job.name, version.spec, reused=reused)
                loc = ArtifactLocation(kind=DATASET, path=version.path, spec=version.spec)
            else:
                loc = ArtifactLocation(kind=decl.type, path=path)
            with self._lock:
                self._outputs[(job.name, decl.name)] = loc

    def _latest_number(self, ref: str) -> Optional[int]:
        if not self.store.exists(ref):
            return None
        versions = self.store.list_versions(ref)
        return versions[-1].number if versions else None

    # ---- one job ----

    def _run_job(self, job: Job) -> None:
        action = get_action(job.uses)
        log_path = self.run_dir / "logs" / f"{job.name}.log"
        self.records[job.name].log = str(log_path)

        mounts = self._input_mounts(job)
        output_dirs: Dict[str, Path] = {}
        for decl in job.outputs:
            output_dirs[decl.name] = self.workspace.output_dir(job.name, decl.name)
            mounts.append(Mount(source=output_dirs[decl.name], target=decl.mount_path))

        env = self.wf.env_of(job)
        env["GRADFLOW_RUN_ID"] = self.run_id
        env["GRADFLOW_JOB"] = job.name

        ctx = JobContext(
            job=job,
            backend=self.backend,
            mounts=mounts,
            output_dirs=output_dirs,
            env=env,
            log_path=log_path,
            workdir=self.workspace.job_dir(job.name),
        )
        action.run(job, ctx)
        self._commit_outputs(job, output_dirs)

    # ---- scheduler callbacks ----

    def _on_start(self, job: Job) -> None:
        rec = self.records[job.name]
        rec.status = "running"
        rec.started_at = time.time()
        self.console.print_job_start(job.name, rec.instance_type)

    def _on_finish(self, job: Job, status: str, error: Optional[BaseException]) -> None:
        rec = self.records[job.name]
        rec.status = status
        rec.finished_at = time.time()
        if status != FAILED:
            self.console.print_job_success(job.name, rec.duration)
            return

        rec.error = str(error)
        rec.error_type = type(error).__name__
        hint = None
        tail = None
        if isinstance(error, JobFailure):
            rec.exit_code = error.exit_code
            tail = error.tail
        elif isinstance(error, BackendUnavailable):
            hint = error.hint
        self.console.print_failure(
            job.name,
            str(error),
            exit_code=rec.exit_code,
            hint=hint,
            tail=tail,
        )
        if self.console.debug and error is not None:
            self.console.print_exception(error)

    def _on_skip(self, job: Job, reason: str) -> None:
        rec = self.records[job.name]
        rec.status = "skipped"
        rec.skip_reason = reason
        self.console.print_job_skipped(job.name, reason)

    # ---- public ----

    def run(self) -> RunResult:
        check_workflow(self.wf)
        levels = topo_levels(*build_dag(self.wf.jobs))

        self.console.print_run_started(
            workflow=self.wf.name,
            run_id=self.run_id,
            job_count=len(self.wf.jobs),
            backend=self.backend.name,
        )
        if self.print_plan:
            self.console.print_plan(levels)

        started = time.time()
        self.run_dir.mkdir(parents=True, exist_ok=True)
        try:
            statuses = schedule(
                self.wf.jobs,
                self._run_job,
                max_workers=self.settings.workers or default_workers(),
                fail_fast=self.settings.fail_fast,
                tier_of=self.wf.instance_type_of,
                tier_limits=self.settings.tier_limits,
                on_start=self._on_start,
                on_finish=self._on_finish,
                on_skip=self._on_skip,
            )
        finally:
            if not self.settings.keep_workspace:
                self.workspace.cleanup()

        result = RunResult(
            run_id=self.run_id,
            workflow=self.wf.name,
            statuses=statuses,
            jobs=self.records,
            started_at=started,
            finished_at=time.time(),
            backend=self.backend.name,
            branch=self.branch,
            commit=self.commit,
        )
        (self.run_dir / "run.json").write_text(
            json.dumps(result.to_dict(), indent=2, sort_keys=True), encoding="utf-8"
        )
        return result


def run_workflow(wf: Workflow, settings: Settings, **kwargs: Any) -> RunResult:
    """Validate and run `wf` once. See WorkflowRunner for keyword arguments."""
    return WorkflowRunner(wf, settings, **kwargs).run()
