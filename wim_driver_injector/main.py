import argparse
import signal
import sys
from pathlib import Path

from wim_driver_injector import __version__
from wim_driver_injector.config import settings
from wim_driver_injector.domain.models import DiskImageResult
from wim_driver_injector.logging import LoggerFactory, operation_context, setup_logging
from wim_driver_injector.pipeline import LogReporter, inject_drivers
from wim_driver_injector.pipeline.injector import ANY_CONTAINER
from wim_driver_injector.services import DismServicing, PowerShellDiskImage, ScheduledTaskDeferral
from wim_driver_injector.storage.cancellation import CancellationToken
from wim_driver_injector.storage.exceptions import InjectorError, OperationCancelledError
from wim_driver_injector.storage.sweep import RecoverySweep

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 2


def parse_index_selection(value):
    """Parse ``NAME:1,2`` (or just ``1,2``) into ``(name, [1, 2])``."""
    name, _, numbers = value.rpartition(":")
    try:
        indexes = [int(part) for part in numbers.split(",") if part.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid index list: {value!r}") from None
    if not indexes or any(index < 1 for index in indexes):
        raise argparse.ArgumentTypeError(f"invalid index list: {value!r}")
    return name.strip() or ANY_CONTAINER, indexes


def build_parser():
    parser = argparse.ArgumentParser(
        prog="wim-driver-injector",
        description="Inject drivers into every image of a WIM file or of the WIMs inside an ISO",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log raw tool output and every progress tick")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    subparsers = parser.add_subparsers(dest="command", required=True)

    inject = subparsers.add_parser("inject", help="Inject drivers into a .wim or .iso file")
    inject.add_argument("--input", "-i", type=Path, required=True, help="Source .wim or .iso file")
    inject.add_argument("--output", "-o", type=Path, required=True, help="Destination file")
    inject.add_argument(
        "--drivers",
        type=Path,
        nargs="+",
        required=True,
        help="Folders searched recursively for .inf driver packages",
    )
    inject.add_argument(
        "--optimize",
        action=argparse.BooleanOptionalAction,
        default=settings.get_bool("optimize_default", True),
        help="Rebuild the output with maximum compression",
    )
    inject.add_argument("--scratch", type=Path, help="Folder to create the scratch workspace in")
    inject.add_argument(
        "--index",
        dest="indexes",
        type=parse_index_selection,
        action="append",
        default=[],
        metavar="[NAME:]1,2",
        help="Only process these indexes (boot.wim always gets all of them)",
    )
    inject.add_argument(
        "--mounted-root",
        type=Path,
        help="Read ISO contents from this already mounted drive instead of mounting the ISO",
    )

    subparsers.add_parser("sweep", help="Remove scratch folders left behind by earlier runs")
    return parser


def _install_interrupt_handler(token, log):
    def handler(signum, frame):
        if token.is_cancelled:
            log.warning("Cancellation already in progress, waiting for cleanup")
            return
        log.warning("Cancelling, please wait for cleanup to finish")
        token.cancel()

    return signal.signal(signal.SIGINT, handler)


def _log_result(log, result):
    if isinstance(result, DiskImageResult):
        containers = result.containers
    else:
        containers = [result]
    for container in containers:
        for path, reason in container.driver_failures.items():
            log.warning(f"{container.container_path.name}: driver folder {path} failed: {reason}")
    exported = sum(container.exported_count for container in containers)
    log.info(f"Exported {exported} image index(es) to {result.output_path}")


def run_inject(args, log):
    selections = dict(args.indexes)
    token = CancellationToken()
    previous_handler = _install_interrupt_handler(token, log)
    try:
        with operation_context("inject", input=str(args.input), output=str(args.output)):
            result = inject_drivers(
                args.input,
                args.output,
                args.drivers,
                servicing=DismServicing(),
                disk_images=PowerShellDiskImage(),
                deferral=ScheduledTaskDeferral(),
                optimize=args.optimize,
                cancel_token=token,
                selected_indexes=selections or None,
                mounted_root=args.mounted_root,
                scratch_root=args.scratch,
                reporter=LogReporter(LoggerFactory.for_pipeline()),
            )
    except OperationCancelledError as error:
        log.warning(str(error))
        return EXIT_CANCELLED
    except (InjectorError, ValueError, OSError) as error:
        log.error(str(error))
        return EXIT_FAILED
    finally:
        signal.signal(signal.SIGINT, previous_handler)
    _log_result(log, result)
    return EXIT_OK


def run_sweep(args, log):
    sweep = RecoverySweep(DismServicing(), ScheduledTaskDeferral())
    with operation_context("sweep"):
        result = sweep.sweep()
    if result.needs_restart:
        log.warning("Restart Windows to finish removing the leftover mounts")
    return EXIT_OK


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()
    log.debug(f"wim-driver-injector {__version__} starting ({args.command})")

    if args.command == "inject":
        return run_inject(args, log)
    return run_sweep(args, log)


if __name__ == "__main__":
    sys.exit(main())
