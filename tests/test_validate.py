"""Tests for workflow validation."""

import pytest

from conftest import FakeBackend
from gradflow import container, dataset, git_checkout, job, output, script, volume, wf
from gradflow.errors import WorkflowError
from gradflow.model import Job, OutputDecl
from gradflow.runner import run_workflow
from gradflow.validate import check_workflow, validate_workflow


def _script(name, **kwargs):
    return job(name, script("alpine", "true"), **kwargs)


class TestValidateWorkflow:
    """Tests for validate_workflow problem reporting."""

    def test_valid(self):
        w = wf(
            "ok",
            job("clone", git_checkout("https://example.com/r.git"), outputs={"repo": volume()}),
            _script("use", needs=["clone"], inputs={"repo": output("clone", "repo")}),
        )
        assert validate_workflow(w) == []

    def test_no_jobs(self):
        assert validate_workflow(wf("empty")) == ["Workflow defines no jobs"]

    def test_unknown_need_and_duplicate(self):
        w = wf("w", _script("a", needs=["ghost"]), _script("a"))
        problems = validate_workflow(w)
        assert "Duplicate job names found: ['a']" in problems
        assert "Job 'a' needs unknown job 'ghost'" in problems

    def test_cycle_reported_as_path(self):
        w = wf("w", _script("a", needs=["c"]), _script("b", needs=["a"]), _script("c", needs=["b"]))
        problems = validate_workflow(w)
        cycles = [p for p in problems if p.startswith("Dependency cycle: ")]
        assert len(cycles) == 1
        path = cycles[0].removeprefix("Dependency cycle: ").split(" -> ")
        assert path[0] == path[-1]
        assert set(path) == {"a", "b", "c"}

    def test_unknown_action_and_params(self):
        bad = Job(name="x", uses="magic@v9")
        extra = Job(name="y", uses="container@v1", params={"image": "alpine", "args": ["ls"], "shell": "bash"})
        problems = validate_workflow(wf("w", bad, extra))
        assert any("uses unknown action 'magic@v9'" in p for p in problems)
        assert "Job 'y' (container@v1) has unknown parameter with.shell" in problems

    def test_action_requirements(self):
        problems = validate_workflow(wf(
            "w",
            Job(name="s", uses="script@v1", params={"image": "alpine", "script": "  "}),
            Job(name="c", uses="container@v1", params={"image": "alpine", "args": []}),
            job("g", git_checkout("https://example.com/r.git")),
        ))
        assert "Job 's' (script@v1) needs a non-empty with.script" in problems
        assert "Job 'c' (container@v1) needs a non-empty with.args list" in problems
        assert "Job 'g' (git-checkout@v1) must declare exactly one output, got 0" in problems

    def test_input_must_come_from_needs(self):
        w = wf(
            "w",
            _script("producer", outputs={"data": volume()}),
            _script("consumer", inputs={"data": output("producer", "data")}),
        )
        problems = validate_workflow(w)
        assert problems == [
            "Job 'consumer' input 'data' binds producer.outputs.data but 'producer' is not in its needs"
        ]

    def test_input_from_transitive_need_is_fine(self):
        w = wf(
            "w",
            _script("a", outputs={"data": volume()}),
            _script("b", needs=["a"]),
            _script("c", needs=["b"], inputs={"data": output("a", "data")}),
        )
        assert validate_workflow(w) == []

    def test_input_to_missing_output(self):
        w = wf(
            "w",
            _script("a", outputs={"data": volume()}),
            _script("b", needs=["a"], inputs={"x": output("a", "nope")}, outputs={}),
            _script("c", needs=["a"], inputs={"y": output("ghost", "data")}),
        )
        problems = validate_workflow(w)
        assert "Job 'b' input 'x' binds a.outputs.nope but job 'a' declares no output 'nope'" in problems
        assert "Job 'c' input 'y' binds ghost.outputs.data but job 'ghost' does not exist" in problems

    def test_output_declarations(self):
        j = Job(
            name="a",
            uses="script@v1",
            params={"image": "alpine", "script": "true"},
            outputs=[
                OutputDecl("x", "dataset"),
                OutputDecl("y", "bucket"),
                OutputDecl("z", "dataset", "imgs:v2"),
            ],
        )
        problems = validate_workflow(wf("w", j))
        assert "Job 'a' dataset output 'x' needs with.ref" in problems
        assert any("output 'y' has unknown type 'bucket'" in p for p in problems)
        assert any("ref 'imgs:v2' must not carry a version" in p for p in problems)

    def test_invalid_dataset_names_caught_before_running(self):
        w = wf(
            "w",
            job(
                "trainOurModel",
                script("alpine", "echo trained > /outputs/net/n.pkl"),
                inputs={"images": dataset("public images:v1")},
                outputs={"net": dataset("my trained net")},
            ),
            _script("nested", outputs={"out": dataset("models/versions")}),
        )
        problems = validate_workflow(w)
        assert len(problems) == 3
        assert any("output 'net' names dataset 'my trained net'" in p for p in problems)
        assert any("input 'images' names dataset 'public images'" in p for p in problems)
        assert any("names dataset 'models/versions'" in p for p in problems)

    def test_invalid_dataset_name_blocks_the_run(self, store, settings):
        w = wf(
            "w",
            job(
                "trainOurModel",
                script("alpine", "echo trained > /outputs/net/n.pkl"),
                outputs={"net": dataset("my trained net")},
            ),
        )
        with pytest.raises(WorkflowError, match="not a valid dataset name"):
            run_workflow(w, settings, store=store, backend=FakeBackend(), print_plan=False)
        assert store.list_datasets() == []

    def test_concurrent_writers_of_one_dataset(self):
        w = wf(
            "w",
            _script("a", outputs={"out": dataset("shared")}),
            _script("b", outputs={"out": dataset("shared")}),
        )
        problems = validate_workflow(w)
        assert problems == [
            "Jobs 'a' and 'b' may run concurrently and both write dataset 'shared'; give each its own dataset"
        ]

    def test_sequential_writers_of_one_dataset(self):
        w = wf(
            "w",
            _script("a", outputs={"out": dataset("shared")}),
            _script("b", needs=["a"], outputs={"out": dataset("shared")}),
        )
        assert validate_workflow(w) == []

    def test_container_job(self):
        w = wf("w", job("get", container("alpine", "wget", "-P", "/outputs/m"), outputs={"m": dataset("m")}))
        assert validate_workflow(w) == []


class TestCheckWorkflow:
    """Tests for the raising variant."""

    def test_raises_with_all_problems(self):
        w = wf("broken", _script("a", needs=["x"]), _script("b", needs=["y"]))
        with pytest.raises(WorkflowError) as exc:
            check_workflow(w)
        assert exc.value.workflow == "broken"
        assert len(exc.value.problems) == 2
        assert "invalid workflow 'broken' (2 problem(s))" in str(exc.value)
