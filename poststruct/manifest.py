#!/usr/bin/env python3
"""
Per-step status manifest.

One JSON manifest per subject/session records the status of every step of
the stage. It is rewritten atomically after each status change so that an
interrupted run always leaves a readable manifest behind.
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from enum import Enum
from pathlib import Path

logger = logging.getLogger("bids-poststructural.manifest")


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


def write_json_atomic(path, data):
    """
    Write JSON to ``path`` through a temporary file in the same directory.

    Parameters
    ----------
    path : Path
        Destination file
    data : dict
        JSON-serialisable content
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=4)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)
        raise


class StepManifest:
    """Ordered step statuses for one run of a module."""

    def __init__(self, path, module, bids_id):
        """
        Initialize an empty manifest.

        Parameters
        ----------
        path : Path
            Manifest JSON location
        module : str
            Module name, e.g. ``post_structural``
        bids_id : str
            Subject/session identifier
        """
        self.path = Path(path)
        self.module = module
        self.bids_id = bids_id
        self.steps = {}

    @classmethod
    def load(cls, path):
        """
        Read a manifest written by :meth:`save`.

        Raises
        ------
        FileNotFoundError
            If the manifest does not exist
        """
        with open(path) as f:
            data = json.load(f)
        manifest = cls(path, data["Module"], data["Subject"])
        for name, entry in data.get("Steps", {}).items():
            entry = dict(entry)
            entry["status"] = StepStatus(entry["status"])
            manifest.steps[name] = entry
        return manifest

    def register(self, name, outputs=()):
        """Add a step in the pending state."""
        if name in self.steps:
            raise ValueError(f"Step already registered: {name}")
        self.steps[name] = {
            "status": StepStatus.PENDING,
            "outputs": [str(o) for o in outputs],
            "returncode": None,
            "message": None,
            "updated": datetime.now().isoformat(),
        }
        self.save()

    def mark(self, name, status, returncode=None, message=None):
        """
        Update the status of a registered step and persist the manifest.

        Parameters
        ----------
        name : str
            Step name
        status : StepStatus
            New status
        returncode : int, optional
            Exit status of the failing tool
        message : str, optional
            Human-readable detail
        """
        entry = self.steps[name]
        entry["status"] = StepStatus(status)
        entry["returncode"] = returncode
        entry["message"] = message
        entry["updated"] = datetime.now().isoformat()
        logger.debug(f"Step {name}: {entry['status'].value}")
        self.save()

    def status_of(self, name):
        return self.steps[name]["status"]

    @property
    def total(self):
        return len(self.steps)

    @property
    def completed(self):
        return sum(1 for entry in self.steps.values() if entry["status"] is StepStatus.DONE)

    @property
    def progress(self):
        return f"{self.completed}/{self.total}"

    @property
    def status(self):
        if self.total and self.completed == self.total:
            return "COMPLETED"
        return "INCOMPLETE"

    def failed_steps(self):
        """Names of the steps that are not done."""
        return [name for name, entry in self.steps.items() if entry["status"] is not StepStatus.DONE]

    def to_dict(self):
        return {
            "Module": self.module,
            "Subject": self.bids_id,
            "Status": self.status,
            "Progress": self.progress,
            "Steps": {
                name: dict(entry, status=entry["status"].value)
                for name, entry in self.steps.items()
            },
        }

    def save(self):
        write_json_atomic(self.path, self.to_dict())
