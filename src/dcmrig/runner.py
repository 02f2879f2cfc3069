import os
import logging
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path

import click
from tqdm import tqdm

from dcmrig.cookbook import TransformConfig
from dcmrig.dicoms import NotDicomError, copy_file, read_dicom, sanitized_values, write_dicom
from dcmrig.paths import (
    DEFAULT_SORT_ORDER,
    FAILED_DIR,
    NON_DICOM_DIR,
    mirror_dir,
    plan_output,
    plan_sort,
    reserve_path,
)
from dcmrig.transform import apply

IGNORE_FILES = [".DS_Store"]

SUCCESS = "success"
SKIPPED = "skipped"
FAILED = "failed"
INTERRUPTED = "interrupted"

ACTIONS = {"sort": "Sorted", "anon": "Anonymized", "deid": "Deidentified"}

KEYBOARD_QUIT_STATUS = "Processing interrupted by user"
CONFIRM_KEYBOARD_QUIT_MSG = "Are you sure that you want to quit processing?"

logger = logging.getLogger(__name__)


@dataclass
class Job:
    """
    Everything the workers share for a run. config and the sort order are
    read-only once the run starts; registry is the only shared state which
    changes, and it does its own locking.
    """

    mode: str
    source: Path
    destination: Path
    config: TransformConfig = field(default_factory=TransformConfig)
    registry: object = None
    sort_order: list = field(default_factory=lambda: list(DEFAULT_SORT_ORDER))
    rename: bool = False


@dataclass
class FileResult:
    file: str
    status: str
    output: str = None
    error: str = None


@dataclass
class RunSummary:
    action: str
    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    interrupted: int = 0
    failures: list = field(default_factory=list)

    def record(self, result):
        if result.status == SUCCESS:
            self.succeeded += 1
            logger.debug(f"{result.file} -> {result.output}")
        elif result.status == SKIPPED:
            self.skipped += 1
            logger.debug(f"{result.file} skipped: {result.error}")
        elif result.status == INTERRUPTED:
            self.interrupted += 1
        else:
            self.failed += 1
            self.failures.append(result)
            logger.debug(f"{result.file} failed: {result.error}")

    def log(self):
        logger.info(f"Total Files: {self.total}")
        logger.info(f"Failed Cases: {self.failed}")
        logger.info(f"NON-DCM files: {self.skipped}")
        if self.interrupted:
            logger.info(f"Interrupted: {self.interrupted}")
        logger.info(f"Total {ACTIONS.get(self.action, self.action)}: {self.succeeded}")


def find_files(root, exclude=None):
    """
    List all of the files under root, skipping anything under exclude (so
    that a destination inside the source isn't processed)
    ---
    root: pathlib.Path
    exclude: pathlib.Path or None

    returns: list of pathlib.Path
    """
    files = []
    exclude = exclude.resolve() if exclude is not None else None
    for f in root.glob("**/*"):
        if not f.is_file() or f.name in IGNORE_FILES:
            continue
        if exclude is not None and exclude in f.resolve().parents:
            continue
        files.append(f)
    return sorted(files)


def log_failure(label, e):
    """Log a file failure and return a value for the run summary"""
    error = str(e) or type(e).__name__
    logger.error(f"{label} exception: {error}")
    return error


def copy_aside(file, directory):
    """Copy a file which couldn't be processed into NON_DICOM or FAILED_CASES"""
    try:
        path = reserve_path(directory, file.name)
        copy_file(file, path)
    except OSError as e:
        logger.error(f"Can't copy {file} to {directory}: {e}")


def _write(path, writer):
    try:
        writer()
    except BaseException:
        path.unlink(missing_ok=True)
        raise


def transform_file(job, file, dataset):
    """
    Transform a parsed file according to the job's mode and write it to
    the destination. Returns the path it was written to.
    """
    if job.mode == "sort":
        values = sanitized_values(dataset)
        directory, filename = plan_sort(values, job.sort_order, job.destination)
        path = reserve_path(directory, filename)
        _write(path, lambda: copy_file(file, path))
        return path
    result, identifier = apply(dataset, job.config, job.registry, job.mode)
    values = sanitized_values(result)
    relative = None if job.rename else mirror_dir(job.source, file)
    directory, filename = plan_output(
        values, identifier, job.mode, job.destination, relative
    )
    path = reserve_path(directory, filename)
    _write(path, lambda: write_dicom(result, path))
    return path


def process_file(job, file):
    """
    Process one file from start to finish. Errors are trapped and returned
    as a failed FileResult so that they can't affect any other file. This
    includes files which look like DICOMs but are broken enough that
    pydicom fails while parsing them.
    ---
    job: Job
    file: pathlib.Path

    returns: FileResult
    """
    try:
        dataset = read_dicom(file)
        path = transform_file(job, file, dataset)
    except NotDicomError as e:
        copy_aside(file, job.destination / NON_DICOM_DIR)
        return FileResult(str(file), SKIPPED, error=str(e))
    except Exception as e:
        error = log_failure(f"File {file}", e)
        copy_aside(file, job.destination / FAILED_DIR)
        return FileResult(str(file), FAILED, error=error)
    return FileResult(str(file), SUCCESS, output=str(path))


def run(job, files, workers=None):
    """
    Process files with a pool of worker threads and return a RunSummary.
    Files finish in no particular order.

    If a KeyboardInterrupt is received, the user is asked to confirm that
    they want to stop: if they do, files which haven't started are
    cancelled and counted as interrupted, and the files in progress are
    allowed to finish.
    ---
    job: Job
    files: list of pathlib.Path
    workers: int or None for the number of CPUs

    returns: RunSummary
    """
    if workers is None:
        workers = os.cpu_count() or 1
    summary = RunSummary(job.mode, total=len(files))
    logger.info(f"Processing {len(files)} files with {workers} workers")
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(process_file, job, f): f for f in files}
        pending = set(futures)
        with tqdm(total=len(files), desc=ACTIONS[job.mode]) as progress:
            while pending:
                try:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    if click.confirm(CONFIRM_KEYBOARD_QUIT_MSG):
                        logger.warning("KeyboardInterrupt, cancelling remaining files")
                        for future in pending:
                            if future.cancel():
                                summary.record(
                                    FileResult(
                                        str(futures[future]),
                                        INTERRUPTED,
                                        error=KEYBOARD_QUIT_STATUS,
                                    )
                                )
                        pending = {f for f in pending if not f.cancelled()}
                    continue
                for future in done:
                    summary.record(future.result())
                    progress.update(1)
    summary.log()
    return summary
