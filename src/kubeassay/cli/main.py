#!/usr/bin/env python3
"""
KUBEASSAY CLI
-------------
Command line entry point. Routes `run` and `get objects` to the engine and
the cluster client, and maps outcomes onto sysexits-style exit codes.

Author: KubeAssay Team
"""

import argparse
import logging
import shutil
import sys
from typing import List, Optional

from kubernetes.config.config_exception import ConfigException
from rich.markup import escape

from kubeassay.cli.formatter import KubeFormatter, err_console
from kubeassay.core.config import (
    OUTPUT_FORMATS,
    OUTPUT_TAP,
    OUTPUT_TREE,
    REGO_V0,
    REGO_VERSIONS,
    TRACE_REGO,
    RunConfig,
)
from kubeassay.core.engine import Runner
from kubeassay.core.errors import KubeAssayError, TransportError
from kubeassay.core.unstructured import LABEL_MANAGED_BY, MANAGER_NAME, Unstructured
from kubeassay.document.reader import Document, read_file
from kubeassay.driver.environment import Environment
from kubeassay.driver.kube import ApiError, KubeClient
from kubeassay.driver.objects import DryRunObjectDriver, KubeObjectDriver, ObjectDriver
from kubeassay.policy.check import CheckDriver
from kubeassay.policy.opa import OpaRuntime
from kubeassay.recorder.recorder import StateRecorder, stack_recorders
from kubeassay.recorder.tap import TapWriter
from kubeassay.recorder.tree import TreeWriter

PROGNAME = "kubeassay"
VERSION = "0.1.0"

EX_OK = 0
EX_FAIL = 1
EX_USAGE = 64
EX_DATAERR = 65
EX_NOINPUT = 66
EX_SOFTWARE = 70

logger = logging.getLogger("kubeassay.cli")


class UsageError(Exception):
    pass


class KubeAssayParser(argparse.ArgumentParser):
    """ArgumentParser that reports bad invocations with EX_USAGE."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EX_USAGE, f"{self.prog}: error: {message}\n")


class KubeAssayCLI:
    """
    CLI wrapper that translates user commands into Runner actions.
    """

    def __init__(self):
        self.parser = KubeAssayParser(
            prog=PROGNAME,
            description="KubeAssay - declarative Kubernetes test documents",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.formatter = KubeFormatter()
        self._setup_args()

    def _setup_args(self):
        """Configures the command-line flags and subcommands."""
        self.parser.add_argument("--version", action="version", version=f"{PROGNAME} v{VERSION}")
        self.parser.add_argument("-v", "--verbose", action="count", default=0,
                                 help="Increase log verbosity (-v info, -vv debug)")
        self.parser.add_argument("--kubeconfig", help="Path to the kubeconfig file")
        self.parser.add_argument("--context", help="Kubeconfig context to use")

        subparsers = self.parser.add_subparsers(dest="command", metavar="Command")

        run_parser = subparsers.add_parser(
            "run",
            help="Run a set of test documents",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            description=(
                "Execute the test documents given as arguments.\n\n"
                "Test documents are ordered fragments of YAML objects and Rego\n"
                "checks, separated by the YAML document separator '---'. The\n"
                "fragments are executed in order. Checks are retried until they\n"
                "pass or '--check-timeout' expires.\n\n"
                "Objects are labeled '%s=%s' and cleaned up when\n"
                "the document ends unless '--preserve' is given." % (LABEL_MANAGED_BY, MANAGER_NAME)
            ),
        )
        run_parser.add_argument("paths", nargs="+", metavar="PATH", help="Test document files")
        run_parser.add_argument("--check-timeout", type=float, default=30.0,
                                help="Seconds to keep retrying each check (default: 30)")
        run_parser.add_argument("--poll-interval", type=float, default=0.5,
                                help="Seconds between check attempts (default: 0.5)")
        run_parser.add_argument("--preserve", action="store_true",
                                help="Don't delete Kubernetes objects at the end of a document")
        run_parser.add_argument("--dry-run", action="store_true",
                                help="Don't create Kubernetes objects, simulate them")
        run_parser.add_argument("--trace", choices=[TRACE_REGO], help="Set execution tracing")
        run_parser.add_argument("--opa", default="opa", help="Path to the opa binary")
        run_parser.add_argument("--rego-version", choices=REGO_VERSIONS, default=REGO_V0,
                                help="Rego syntax of check fragments (default: v0)")
        run_parser.add_argument("--format", choices=OUTPUT_FORMATS, default=OUTPUT_TREE,
                                help="Result output format (default: tree)")

        self.get_parser = subparsers.add_parser("get", help="Get one of [objects]")
        get_sub = self.get_parser.add_subparsers(dest="what", metavar="Resource")
        get_sub.add_parser(
            "objects",
            help="List Kubernetes objects managed by test runs",
            description=f"Lists Kubernetes objects labeled with '{LABEL_MANAGED_BY}={MANAGER_NAME}'.",
        )

    # --- run ---

    def _config(self, args) -> RunConfig:
        try:
            return RunConfig(
                check_timeout=args.check_timeout,
                poll_interval=args.poll_interval,
                preserve=args.preserve,
                dry_run=args.dry_run,
                trace=args.trace,
                opa_binary=args.opa,
                kubeconfig=args.kubeconfig,
                context=args.context,
                output=args.format,
                rego_version=args.rego_version,
            )
        except ValueError as e:
            raise UsageError(str(e)) from e

    def _read_documents(self, paths: List[str]) -> List[Document]:
        docs = []
        for path in paths:
            doc = read_file(path)
            logger.info("read document with %d parts from %s", len(doc.parts), path)
            docs.append(doc)
        return docs

    def _object_driver(self, config: RunConfig, kube: Optional[KubeClient], env: Environment) -> ObjectDriver:
        if config.dry_run:
            return DryRunObjectDriver(env)
        return KubeObjectDriver(kube, env)

    def cmd_run(self, args) -> int:
        config = self._config(args)

        try:
            docs = self._read_documents(args.paths)
        except UnicodeDecodeError as e:
            err_console.print(f"[bold red]Error:[/bold red] undecodable input: {escape(str(e))}")
            return EX_DATAERR
        except OSError as e:
            err_console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
            return EX_NOINPUT

        if shutil.which(config.opa_binary) is None:
            err_console.print(f"[bold red]Error:[/bold red] OPA binary '{config.opa_binary}' not found")
            return EX_SOFTWARE

        kube = None
        if not config.dry_run:
            try:
                kube = KubeClient.from_config(config.kubeconfig, config.context,
                                              user_agent=f"{PROGNAME}/{VERSION}")
            except ConfigException as e:
                err_console.print(f"[bold red]Error:[/bold red] failed to initialize Kubernetes context: {escape(str(e))}")
                return EX_FAIL

        if config.output == OUTPUT_TREE:
            self.formatter.print_header(f"v{VERSION}", "Dry run" if config.dry_run else "Test run")

        writer = TapWriter() if config.output == OUTPUT_TAP else TreeWriter()
        state = StateRecorder()
        recorder = stack_recorders(state, writer)
        runtime = OpaRuntime(binary=config.opa_binary, rego_version=config.rego_version,
                             trace=config.trace_rego)

        for doc in docs:
            env = Environment()
            logger.info("running %s with run ID %s", doc.name, env.run_id)
            runner = Runner(
                config=config,
                object_driver=self._object_driver(config, kube, env),
                check_driver=CheckDriver(runtime),
                recorder=recorder,
                environment=env,
            )
            runner.run(doc)

        return EX_FAIL if state.failed() else EX_OK

    # --- get ---

    def cmd_get(self, args) -> int:
        if args.what != "objects":
            self.get_parser.print_help()
            return EX_USAGE

        try:
            kube = KubeClient.from_config(args.kubeconfig, args.context,
                                          user_agent=f"{PROGNAME}/{VERSION}")
        except ConfigException as e:
            err_console.print(f"[bold red]Error:[/bold red] failed to initialize Kubernetes context: {escape(str(e))}")
            return EX_FAIL

        try:
            items = kube.list_managed(f"{LABEL_MANAGED_BY}={MANAGER_NAME}")
        except (ApiError, TransportError) as e:
            err_console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
            return EX_FAIL

        self.formatter.print_objects([Unstructured(item) for item in items])
        return EX_OK

    # --- routing ---

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Primary routing entry point."""
        args = self.parser.parse_args(argv)

        level = logging.WARNING
        if args.verbose == 1:
            level = logging.INFO
        elif args.verbose > 1:
            level = logging.DEBUG
        logging.basicConfig(
            level=level,
            stream=sys.stderr,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        try:
            if args.command == "run":
                return self.cmd_run(args)
            if args.command == "get":
                return self.cmd_get(args)
        except UsageError as e:
            err_console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
            return EX_USAGE
        except KubeAssayError as e:
            logger.exception("internal error")
            err_console.print(f"[bold red]CRITICAL ERROR:[/bold red] {escape(str(e))}")
            return EX_SOFTWARE

        self.parser.print_help()
        return EX_USAGE


def main(argv: Optional[List[str]] = None):
    """Application entry point with interrupt handling."""
    try:
        code = KubeAssayCLI().run(argv)
    except KeyboardInterrupt:
        err_console.print("\n[bold red]Terminated by user.[/bold red]")
        code = EX_FAIL
    sys.exit(code)


if __name__ == "__main__":
    main()
