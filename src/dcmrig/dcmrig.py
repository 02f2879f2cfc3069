#!/usr/bin/env python

import sys
import argparse
import logging
from pathlib import Path

from importlib.metadata import version

__version__ = version("dcmrig")

from dcmrig.cookbook import FileCookbook, default_cookbook_path, ensure_cookbook
from dcmrig.identity import AnonymousRegistry, MappingRegistry, MappingTableError
from dcmrig.paths import parse_sort_order
from dcmrig.runner import Job, find_files, run

LOG_FILE = "dcmrig.log"

logger = logging.getLogger(__name__)


class FatalError(Exception):
    pass


def check_paths(source, destination):
    """
    Make sure the source is a directory and the destination exists or can
    be created. Raises FatalError if not.
    """
    if not source.is_dir():
        raise FatalError(f"Given source path does not exist: {source}")
    try:
        destination.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FatalError(f"Can't create dir: {destination}: {e}")


def load_config(path):
    """Load the cookbook, creating the default one if it's not there"""
    try:
        return FileCookbook(path).load()
    except OSError as e:
        raise FatalError(f"Can't create the default cookbook: {e}")


def prepare_job(args):
    """
    Does all of the setup for a run which can fail: checking paths, loading
    the cookbook and mapping table. Nothing here touches a DICOM file.
    ---
    args: Namespace as returned by argparse

    returns: Job

    raises: FatalError
    """
    check_paths(args.source, args.destination)
    job = Job(args.operation, args.source, args.destination)
    if args.operation == "sort":
        job.sort_order = parse_sort_order(args.sort_order)
        logger.info(f"Sort order {job.sort_order}")
        return job
    job.config = load_config(args.config)
    job.rename = args.rename
    if args.operation == "anon":
        job.registry = AnonymousRegistry(args.prefix)
    else:
        try:
            job.registry = MappingRegistry.from_file(args.mapping_table)
        except MappingTableError as e:
            raise FatalError(str(e))
    return job


def show_help():
    print(
        """
dcmrig is a utility for sorting, anonymizing and deidentifying directories
of DICOM files.

Sample usage:

    dcmrig sort -s NIM ./source ./sorted

Copies files into directories by PatientName, PatientID and Modality, then
study and series. Any combination of I=PatientID, N=PatientName and
M=Modality can be used.

    dcmrig anon ./source ./anon

Anonymizes files, giving each PatientID a new random ID.

    dcmrig deid -m mapping.csv ./source ./deid

Deidentifies files using a mapping table with lines like DeID_001,U012345
and the mask / add / delete chain from the cookbook.

    dcmrig init

Writes out the default cookbook at ~/.dcmrig/cookbook.toml if there isn't
one already. Use --config to read the cookbook from somewhere else.

Files which aren't DICOMs are copied to NON_DICOM, and files which fail are
copied to FAILED_CASES, in the destination directory.
"""
    )


def build_parser():
    ap = argparse.ArgumentParser(
        "dcmrig", description="DCMRig: DICOM corelab tools"
    )
    ap.add_argument(
        "-v", "--verbose", action="store_true", default=False, help="Verbose output"
    )
    ap.add_argument("-V", "--version", action="version", version="%(prog)s " + __version__)
    ap.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Cookbook file (default {default_cookbook_path()})",
    )
    ap.add_argument(
        "--workers", type=int, default=None, help="Number of worker threads"
    )
    ap.add_argument("--loglevel", type=str, default="info", help="Logging level")
    ap.add_argument(
        "--logdir", type=Path, default="logs", help="Directory to write logs to"
    )
    sub = ap.add_subparsers(dest="operation", required=True, help="Operation")

    sort = sub.add_parser("sort", help="Sort by PatientID, PatientName and Modality")
    sort.add_argument(
        "-s",
        "--sort-order",
        default="I",
        help="Any combination of I=PatientID, N=PatientName and M=Modality",
    )

    anon = sub.add_parser("anon", help="Give each PatientID a new random ID")
    anon.add_argument("--prefix", default="", help="Prefix for the new IDs")

    deid = sub.add_parser("deid", help="Deidentify with a mapping table")
    deid.add_argument(
        "-m",
        "--mapping-table",
        type=Path,
        required=True,
        help="Mapping table with lines like DEID_001,U012345",
    )

    for parser in [sort, anon, deid]:
        if parser is not sort:
            parser.add_argument(
                "--rename",
                action="store_true",
                default=False,
                help="Name directories from tags instead of copying the source layout",
            )
        parser.add_argument(
            "source", type=Path, help="Source directory, searched recursively"
        )
        parser.add_argument(
            "destination", type=Path, help="Destination directory, created if needed"
        )

    sub.add_parser("init", help="Write the default cookbook")
    sub.add_parser("help", help="Show detailed usage")
    return ap


def configure_logging(args):
    loglevel = args.loglevel.upper()
    if args.verbose:
        loglevel = "DEBUG"
    package_logger = logging.getLogger("dcmrig")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.DEBUG)
    if not args.logdir.is_dir():
        args.logdir.mkdir(parents=True)
    logfh = logging.FileHandler(args.logdir / LOG_FILE)
    logfh.setLevel(loglevel)
    package_logger.addHandler(logfh)
    logch = logging.StreamHandler()
    logch.setLevel(loglevel)
    package_logger.addHandler(logch)


def cli(argv=None):
    """
    Run dcmrig with a list of command line arguments and return the exit
    status: 0 when the run completes, even if some files failed, and 1 if
    it couldn't start.
    """
    args = build_parser().parse_args(argv)
    configure_logging(args)

    if args.operation == "help":
        show_help()
        return 0

    if args.operation == "init":
        path = args.config or default_cookbook_path()
        try:
            if ensure_cookbook(path):
                logger.info(f"Initialised cookbook at {path}")
            else:
                logger.info(f"Cookbook already exists at {path}")
        except OSError as e:
            logger.error(f"Can't create the default cookbook: {e}")
            return 1
        return 0

    logger.info(f"dcmrig {__version__}")
    logger.info(f"{args.operation} >> SOURCE: {args.source} | DESTINATION: {args.destination}")
    try:
        job = prepare_job(args)
    except FatalError as e:
        logger.error(str(e))
        return 1
    logger.info(f"Indexing files from: {job.source}")
    files = find_files(job.source, exclude=job.destination)
    run(job, files, args.workers)
    logger.info(f"DICOM {args.operation} complete!")
    return 0


def main():
    sys.exit(cli())


if __name__ == "__main__":
    main()
