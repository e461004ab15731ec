"""End-to-end runner tests on the local backend."""

import json

import pytest

from conftest import REPO_ROOT, FakeBackend
from gradflow import dataset, job, output, script, volume, wf
from gradflow.dag import FAILED, OK, SKIPPED
from gradflow.errors import WorkflowError
from gradflow.loader import load_workflow
from gradflow.runner import WorkflowRunner, list_runs, load_run, run_workflow, triggered_by

IMAGE = "alpine:latest"


def pipeline(extract_script="cp /inputs/db/cats.txt /outputs/extracted/"):
    return wf(
        "pipeline",
        job(
            "download",
            script(IMAGE, "printf 'cat-1\\ncat-2\\n' > /outputs/db/cats.txt"),
            outputs={"db": dataset("cat-db")},
        ),
        job(
            "tools",
            script(IMAGE, "echo tool > /outputs/repo/tool.txt"),
            outputs={"repo": volume()},
        ),
        job(
            "extract",
            script(IMAGE, "cat /inputs/repo/tool.txt\n" + extract_script),
            needs=["download", "tools"],
            inputs={"db": output("download", "db"), "repo": output("tools", "repo")},
            outputs={"extracted": dataset("cat-extracted")},
        ),
    )


class TestLocalRuns:
    """Workflows executed with real shell commands."""

    def test_success(self, settings, store):
        result = run_workflow(pipeline(), settings, store=store, print_plan=False)

        assert result.ok
        assert result.statuses == {"download": OK, "tools": OK, "extract": OK}
        extracted = store.resolve("cat-extracted")
        assert (extracted.path / "cats.txt").read_text() == "cat-1\ncat-2\n"
        assert result.jobs["extract"].datasets == {"extracted": "cat-extracted:v1"}
        assert result.jobs["extract"].duration is not None

    def test_queued_job_not_timed_as_running(self, settings, store):
        settings = settings.with_overrides(workers=1)
        w = wf("w", job("a", script(IMAGE, "sleep 0.3")), job("b", script(IMAGE, "sleep 0.3")))
        result = run_workflow(w, settings, store=store, print_plan=False)

        assert result.ok
        # each job sleeps 0.3s; b waited about as long again for the only worker
        assert result.jobs["a"].duration < 0.55
        assert result.jobs["b"].duration < 0.55

    def test_volumes_removed_after_run(self, settings, store):
        result = run_workflow(pipeline(), settings, store=store, print_plan=False)
        assert not (store.runs_dir / result.run_id / "work").exists()

    def test_keep_workspace(self, settings, store):
        settings = settings.with_overrides(keep_workspace=True)
        result = run_workflow(pipeline(), settings, store=store, print_plan=False)
        repo = store.runs_dir / result.run_id / "work" / "tools" / "outputs" / "repo"
        assert (repo / "tool.txt").read_text() == "tool\n"

    def test_inputs_are_read_only_copies(self, settings, store):
        w = pipeline("echo tampered > /inputs/db/cats.txt || true\ncp /inputs/db/cats.txt /outputs/extracted/")
        result = run_workflow(w, settings, store=store, print_plan=False)
        assert result.ok
        assert (store.resolve("cat-db:v1").path / "cats.txt").read_text() == "cat-1\ncat-2\n"

    def test_failing_script_skips_dependents(self, settings, store):
        w = wf(
            "w",
            job("download", script(IMAGE, "echo fetching\nexit 3"), outputs={"db": dataset("cat-db")}),
            job("tools", script(IMAGE, "true")),
            job(
                "extract",
                script(IMAGE, "true"),
                needs=["download"],
                inputs={"db": output("download", "db")},
            ),
        )
        result = run_workflow(w, settings, store=store, print_plan=False)

        assert result.statuses == {"download": FAILED, "tools": OK, "extract": SKIPPED}
        rec = result.jobs["download"]
        assert rec.exit_code == 3
        assert rec.error_type == "JobFailure"
        assert "fetching" in open(rec.log).read()
        assert not store.exists("cat-db")

    def test_errexit_semantics(self, settings, store):
        w = wf("w", job("j", script(IMAGE, "false\necho unreachable > /outputs/o/x"), outputs={"o": volume()}))
        result = run_workflow(w, settings, store=store, print_plan=False)
        assert result.statuses == {"j": FAILED}

    def test_env_reaches_jobs(self, settings, store):
        w = wf(
            "w",
            job(
                "j",
                script(IMAGE, 'echo "$SEED $GRADFLOW_JOB" > /outputs/o/env.txt'),
                outputs={"o": dataset("env-out")},
                env={"SEED": 6600},
            ),
        )
        run_workflow(w, settings, store=store, print_plan=False, run_id="r1")
        assert (store.resolve("env-out").path / "env.txt").read_text() == "6600 j\n"

    def test_rerun_dedupes_datasets(self, settings, store):
        run_workflow(pipeline(), settings, store=store, print_plan=False)
        second = run_workflow(pipeline(), settings, store=store, print_plan=False)
        assert second.jobs["extract"].datasets == {"extracted": "cat-extracted:v1"}
        assert [v.version for v in store.list_versions("cat-extracted")] == ["v1"]

    def test_pinned_dataset_input(self, settings, store, tmp_path):
        src = tmp_path / "seed"
        src.mkdir()
        (src / "n.txt").write_text("one\n")
        store.import_dir("numbers", src)
        (src / "n.txt").write_text("two\n")
        store.import_dir("numbers", src)

        w = wf(
            "w",
            job(
                "read",
                script(IMAGE, "cp /inputs/n/n.txt /outputs/o/"),
                inputs={"n": dataset("numbers:v1")},
                outputs={"o": dataset("copied")},
            ),
        )
        run_workflow(w, settings, store=store, print_plan=False)
        assert (store.resolve("copied").path / "n.txt").read_text() == "one\n"

    def test_smoke_workflow(self, settings, store):
        result = run_workflow(load_workflow(REPO_ROOT / "smoke_workflow.py"), settings, store=store, print_plan=False)
        assert result.ok
        assert (store.resolve("smoke-extracted").path / "subset.txt").read_text() == "cat-1\ncat-2\n"
        assert (store.resolve("smoke-cat-db").path / "cats.txt.sum").exists()

    def test_invalid_workflow_runs_nothing(self, settings, store):
        backend = FakeBackend()
        w = wf("w", job("a", script(IMAGE, "true"), needs=["ghost"]))
        with pytest.raises(WorkflowError):
            run_workflow(w, settings, store=store, backend=backend)
        assert backend.calls == []


class TestRunRecords:
    """Tests for run.json persistence."""

    def test_record_written(self, settings, store):
        result = run_workflow(pipeline(), settings, store=store, print_plan=False, run_id="run-1", branch="main")
        record = load_run(store, "run-1")

        assert record["run_id"] == "run-1"
        assert record["workflow"] == "pipeline"
        assert record["branch"] == "main"
        assert record["backend"] == "local"
        assert record["statuses"] == result.statuses
        assert record["jobs"]["download"]["datasets"] == {"db": "cat-db:v1"}
        assert json.loads((store.runs_dir / "run-1" / "run.json").read_text()) == record

    def test_list_and_missing(self, settings, store):
        assert list_runs(store) == []
        run_workflow(pipeline(), settings, store=store, print_plan=False, run_id="a")
        assert [r["run_id"] for r in list_runs(store)] == ["a"]
        with pytest.raises(FileNotFoundError):
            load_run(store, "nope")


class TestConsoleOutput:
    """Tests for what a run prints."""

    def test_plan_and_results(self, settings, store, capsys):
        backend = FakeBackend(fail={"download": 1})
        WorkflowRunner(pipeline(), settings, store=store, backend=backend).run()
        out = capsys.readouterr().out
        assert "RUN STARTED" in out
        assert "Stage 1: download, tools" in out
        assert "JOB FAILED: download" in out
        assert "Exit code: 1" in out
        assert "JOB SKIPPED: extract (needs failed job 'download')" in out
        assert "DATASET" not in out


class TestTriggers:
    def test_triggered_by(self):
        assert triggered_by(wf("w", branches=["main"]), "main")
        assert not triggered_by(wf("w", branches=["main"]), "dev")
        assert not triggered_by(wf("w"), "main")
