"""wasmc - incremental builds of WebAssembly modules.

Compiles each module's native sources with a long-lived build executor
(emscripten in a docker container by default) and packages the result
with the module's JavaScript into a ready-to-use product. Only stale
modules are rebuilt, and a module's JavaScript is only regenerated when
its scripts or the binary's API changed.

Usage:
    wasmc [options] [dir]

Options:
    --config PATH       Configuration file (default: wasmc.json in dir)
    -w, --watch         Rebuild continuously as sources change
    --clean             Rebuild everything from scratch
    -g, --debug         Debug build
    --docker-image IMG  Docker image for the build executor
    --local             Run the build executor without docker
    -C DIR              Change to DIR before doing anything
    --verbose, -v       Show detailed output
    --quiet, -q         Suppress all output except errors
    --json              Output the build result in JSON format

Environment Variables:
    WASMC_DOCKER_IMAGE      Docker image for the build executor
    WASMC_LOCAL_EXECUTOR    Set to 'true' to run the executor without docker
    WASMC_BUILDDIR          Build directory, relative to the project root
    WASMC_VERBOSE           Set to 'true' for verbose output
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

from wasmc import __version__
from wasmc.buildbot import BuildBotRegistry
from wasmc.builder import Builder
from wasmc.config import ConfigDict, ExecutorConfigDict, load_config
from wasmc.errors import BuildError, WasmcError
from wasmc.logger import Colors, Logger
from wasmc.watch import WatchScheduler


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="wasmc",
        description="Incremental builds of WebAssembly modules",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  wasmc                     # Build stale modules of the project in .
  wasmc -w                  # Build, then rebuild whenever sources change
  wasmc --clean             # Rebuild every module from scratch
  wasmc -g -C examples/foo  # Debug build of another project

Configuration:
  Create wasmc.json (or wasmc.yaml) in your project root with libs and
  modules definitions.
""",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "dir",
        nargs="?",
        type=Path,
        default=None,
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to configuration file (default: wasmc.json)",
    )
    parser.add_argument(
        "-C",
        dest="chdir",
        metavar="DIR",
        type=Path,
        help="Change to DIR before doing anything",
    )
    parser.add_argument(
        "--watch",
        "-w",
        action="store_true",
        help="Watch source files and rebuild on change",
    )
    parser.add_argument(
        "--clean",
        action="store_true",
        help="Rebuild everything, ignoring existing products",
    )
    parser.add_argument(
        "--debug",
        "-g",
        action="store_true",
        help="Build in debug mode",
    )
    parser.add_argument(
        "--docker-image",
        metavar="IMAGE",
        help="Docker image to run the build executor in",
    )
    parser.add_argument(
        "--local",
        action="store_true",
        help="Run the build executor on this machine instead of in docker",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show detailed output",
    )
    parser.add_argument(
        "--quiet",
        "-q",
        action="store_true",
        help="Suppress all output except errors",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        dest="json_output",
        help="Output in JSON format",
    )

    return parser.parse_args(argv)


def cli_overrides(args: argparse.Namespace) -> ConfigDict:
    """Configuration values given on the command line."""
    overrides: ConfigDict = {}
    executor: ExecutorConfigDict = {}
    if args.docker_image:
        executor["image"] = args.docker_image
    if args.local:
        executor["local"] = True
    if executor:
        overrides["executor"] = executor
    return overrides


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.chdir:
        try:
            os.chdir(args.chdir)
        except OSError as e:
            print(f"{Colors.RED}Error:{Colors.RESET} {e}", file=sys.stderr)
            return 1

    verbose = args.verbose or os.environ.get("WASMC_VERBOSE") == "true"
    logger = Logger(verbose, args.quiet, args.json_output)

    root_dir = (args.dir or Path.cwd()).resolve()
    overrides = cli_overrides(args)

    def reload_config():
        return load_config(root_dir, args.config, overrides, debug=args.debug)

    try:
        config = reload_config()
    except FileNotFoundError as e:
        print(f"{Colors.RED}Error:{Colors.RESET} {e}", file=sys.stderr)
        return 1
    except WasmcError as e:
        print(f"{Colors.RED}Error:{Colors.RESET} {e}", file=sys.stderr)
        return 1

    if not config.modules:
        logger.info(f"No modules configured in {config.relpath(config.file)}")
        return 0

    registry = BuildBotRegistry(logger, quiet=args.quiet)
    builder = Builder(config, registry, logger, force=args.clean, watch=args.watch)

    try:
        if args.watch:
            scheduler = WatchScheduler(builder, logger, load_config=reload_config)
            scheduler.run()
            return 0

        try:
            result = builder.build()
        except BuildError:
            logger.error("build failed")
            return 1
        except (WasmcError, OSError) as e:
            logger.error(f"build failed: {e}")
            return 1

        if args.json_output:
            print(json.dumps(result.to_dict(), indent=2))
        return 0
    finally:
        builder.close()
        registry.close_all()


if __name__ == "__main__":
    sys.exit(main())
