#!/usr/bin/env python3
"""
External tool runner for the post-structural stage

This module runs the FreeSurfer, Workbench, ANTs, FSL, MRtrix and c3d
binaries the stage depends on, capturing their exit status so that a tool
failing after leaving a stale file behind is not taken for a success.
"""

import logging
import subprocess

# Configure logging
logger = logging.getLogger("bids-poststructural.wrapper")


class ToolError(RuntimeError):
    """An external tool exited with a non-zero status or could not be started."""

    def __init__(self, cmd, returncode, stderr=None):
        self.cmd = [str(c) for c in cmd]
        self.returncode = returncode
        self.stderr = stderr or ""
        super().__init__(
            f"Command '{self.cmd[0]}' failed with exit status {returncode}"
        )


class ToolRunner:
    """Runs external commands with a fixed environment."""

    def __init__(self, env=None, logs_dir=None, bids_id=None):
        """
        Initialize the tool runner.

        Parameters
        ----------
        env : dict, optional
            Environment for child processes (see
            ``PostStructuralConfig.tool_environment``)
        logs_dir : Path, optional
            Directory for per-step error logs
        bids_id : str, optional
            Subject identifier used to name error logs
        """
        self.env = env
        self.logs_dir = logs_dir
        self.bids_id = bids_id

        # Track executed commands
        self.calls = []

    def run(self, cmd, step=None):
        """
        Run an external command.

        Parameters
        ----------
        cmd : list
            Command and arguments; non-string items are converted with ``str``
        step : str, optional
            Name of the step the command belongs to, used for error logs

        Returns
        -------
        subprocess.CompletedProcess
            The completed process

        Raises
        ------
        ToolError
            If the command exits non-zero or the executable is not found
        """
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        logger.info(f"Running command: {' '.join(cmd)}")

        try:
            process = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=self.env,
            )
        except FileNotFoundError as e:
            logger.error(f"Executable not found: {cmd[0]}")
            error = ToolError(cmd, 127, str(e))
            self._write_error_log(error, step)
            raise error from e

        # Log output for debugging
        if process.stdout:
            logger.debug(f"Command output: {process.stdout}")

        if process.returncode != 0:
            logger.error(f"Error running {cmd[0]} (exit status {process.returncode})")
            if process.stderr:
                logger.error(f"Error details: {process.stderr}")
            error = ToolError(cmd, process.returncode, process.stderr)
            self._write_error_log(error, step)
            raise error

        if process.stderr:
            logger.debug(f"Command stderr: {process.stderr}")
        return process

    def _write_error_log(self, error, step=None):
        """
        Save the details of a failed command.

        Parameters
        ----------
        error : ToolError
            The failure to record
        step : str, optional
            Step name used in the log filename

        Returns
        -------
        Path or None
            Path to the error log, if a logs directory is configured
        """
        if self.logs_dir is None:
            return None

        self.logs_dir.mkdir(parents=True, exist_ok=True)
        stem = "_".join(part for part in (self.bids_id, step or error.cmd[0]) if part)
        error_file = self.logs_dir / f"{stem}_error.log"

        with open(error_file, "a") as f:
            f.write(f"Command: {' '.join(error.cmd)}\n")
            f.write(f"Exit status: {error.returncode}\n")
            if error.stderr:
                f.write(f"Error details: {error.stderr}\n")

        logger.info(f"Error details saved to {error_file}")
        return error_file
