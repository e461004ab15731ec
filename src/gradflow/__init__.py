from .dsl import job, script, container, git_checkout, dataset, volume, output, wf, JobBuilder, build
from .loader import load_workflow, dump_workflow
from .runner import run_workflow
from .model import Workflow, Job, DatasetRef

__version__ = "0.1.0"

__all__ = [
    "job", "script", "container", "git_checkout", "dataset", "volume", "output", "wf",
    "JobBuilder", "build", "load_workflow", "dump_workflow", "run_workflow",
    "Workflow", "Job", "DatasetRef",
]
