"""Shared pytest fixtures for gradflow tests."""

from pathlib import Path

import pytest
from click.testing import CliRunner

from gradflow.artifacts import DatasetStore
from gradflow.backends import ExecResult
from gradflow.config import Settings
from gradflow.git_facts import git
from gradflow.ui.console import Console, set_console

REPO_ROOT = Path(__file__).resolve().parents[1]
WORKFLOWS_DIR = REPO_ROOT / ".gradient" / "workflows"
DOWNLOAD_WORKFLOW = WORKFLOWS_DIR / "stylegan2-download-and-extract-data.yaml"
TRAIN_WORKFLOW = WORKFLOWS_DIR / "stylegan2-train-and-evaluate-model.yaml"
PUBLIC_IMAGES = "gradient/stylegan2-workflows-sample-project-extr-img"


class FakeBackend:
    """
    Records every command instead of running it.

    `fail` maps a job name (from GRADFLOW_JOB) to the exit code it returns.
    Each job gets a marker file in each of its outputs so datasets have
    content that differs per job.
    """

    name = "fake"

    def __init__(self, fail=None):
        self.fail = dict(fail or {})
        self.calls = []

    def check(self):
        return None

    def run(self, image, command, *, mounts, env, log_path, workdir):
        job = env["GRADFLOW_JOB"]
        self.calls.append((job, image, list(command), list(mounts)))
        for m in mounts:
            if m.target.startswith("/outputs/"):
                Path(m.source, f"{job}.txt").write_text(f"{job} wrote {m.target}\n")
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text(f"fake run of {job}\n")
        code = self.fail.get(job, 0)
        return ExecResult(exit_code=code, tail=f"{job} exited {code}\n")

    def jobs_run(self):
        return [c[0] for c in self.calls]


@pytest.fixture(autouse=True)
def _quiet_console():
    """A fresh non-debug console per test."""
    set_console(Console(debug=False))


@pytest.fixture
def cli_runner():
    """Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def store(tmp_path):
    """An empty dataset store under tmp_path."""
    return DatasetStore(tmp_path / "store")


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at tmp_path, running jobs on the host."""
    return Settings(store_dir=tmp_path / "store", backend="local", workers=4)


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def fake_clone(monkeypatch):
    """Replace git clone with a local copy of a tiny 'repo'."""
    cloned = []

    def clone(url, dest, ref=None):
        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        (dest / "README.md").write_text(f"clone of {url}\n")
        (dest / "dataset_tool.py").write_text("print('ok')\n")
        cloned.append((url, ref))
        return dest

    monkeypatch.setattr(git, "clone", clone)
    return cloned


@pytest.fixture
def public_images(store, tmp_path):
    """Seed the public extracted-images dataset the training workflow reads."""
    src = tmp_path / "public-images" / "cat_images_tfrecords" / "cat"
    src.mkdir(parents=True)
    (src / "cat-r08.tfrecords").write_bytes(b"\x00" * 64)
    return store.import_dir(PUBLIC_IMAGES, tmp_path / "public-images")


def write_file(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path
