"""Tests for the workflow model."""

import pytest

from gradflow.model import DATASET, VOLUME, DatasetRef, InputBinding, Job, OutputDecl, Trigger, Workflow


class TestDatasetRef:
    """Tests for dataset reference parsing."""

    def test_plain_ref_means_latest(self):
        ref = DatasetRef.parse("stylegan2-wsp-extr-img")
        assert ref.ref == "stylegan2-wsp-extr-img"
        assert ref.version is None
        assert ref.selector == "latest"
        assert str(ref) == "stylegan2-wsp-extr-img"

    def test_version_selector(self):
        ref = DatasetRef.parse("stylegan2-wsp-extr-img:v3")
        assert ref.ref == "stylegan2-wsp-extr-img"
        assert ref.selector == "v3"
        assert str(ref) == "stylegan2-wsp-extr-img:v3"

    def test_namespaced_ref_with_tag(self):
        ref = DatasetRef.parse("gradient/extr-img:golden")
        assert ref.ref == "gradient/extr-img"
        assert ref.selector == "golden"

    @pytest.mark.parametrize("spec", [":v1", "images:"])
    def test_malformed(self, spec):
        with pytest.raises(ValueError):
            DatasetRef.parse(spec)


class TestInputBinding:
    """Tests for input bindings."""

    def test_job_output_binding(self):
        b = InputBinding.from_job_output("repo", "cloneStyleGAN2Repo.outputs.repo")
        assert b.is_job_output
        assert b.job == "cloneStyleGAN2Repo"
        assert b.output == "repo"
        assert b.mount_path == "/inputs/repo"
        assert b.source == "cloneStyleGAN2Repo.outputs.repo"

    def test_dataset_binding(self):
        b = InputBinding(name="images", dataset=DatasetRef.parse("imgs:v2"))
        assert not b.is_job_output
        assert b.source == "imgs:v2"

    @pytest.mark.parametrize("binding", ["clone.repo", "clone.outputs", "clone.inputs.repo", "a b.outputs.c"])
    def test_malformed_binding(self, binding):
        with pytest.raises(ValueError, match="expected '<job>.outputs.<name>'"):
            InputBinding.from_job_output("x", binding)


class TestJob:
    """Tests for Job accessors."""

    def test_params_accessors(self):
        job = Job(name="j", uses="container@v1", params={"image": "alpine", "args": ["wget", 1]})
        assert job.image == "alpine"
        assert job.args == ["wget", "1"]
        assert job.script is None

    def test_outputs_lookup(self):
        job = Job(
            name="j",
            uses="script@v1",
            outputs=[OutputDecl("a", DATASET, "ds-a"), OutputDecl("b", VOLUME)],
        )
        assert job.output("b").mount_path == "/outputs/b"
        assert job.output("missing") is None
        assert [o.name for o in job.dataset_outputs()] == ["a"]


class TestWorkflow:
    """Tests for workflow defaults."""

    def test_job_instance_type_overrides_default(self):
        a = Job(name="a", uses="script@v1")
        b = Job(name="b", uses="script@v1", instance_type="P4000")
        wf = Workflow(name="w", jobs=[a, b], instance_type="C3")
        assert wf.instance_type_of(a) == "C3"
        assert wf.instance_type_of(b) == "P4000"

    def test_env_merge(self):
        job = Job(name="a", uses="script@v1", env={"X": "job"})
        wf = Workflow(name="w", jobs=[job], env={"X": "wf", "Y": "wf"})
        assert wf.env_of(job) == {"X": "job", "Y": "wf"}

    def test_trigger_matches(self):
        t = Trigger(branches=("main",))
        assert t.matches("main")
        assert not t.matches("dev")
        assert not t.matches(None)
