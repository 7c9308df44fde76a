#!/usr/bin/env python3
"""
KUBEASSAY ENGINE - The Test Runner
----------------------------------
The Runner executes one test document from start to finish: it decodes
every fragment, applies or deletes each Kubernetes object, polls each check
until the cluster converges and records what happened along the way.

Cluster state reaches the checks through the shared data document. A
watch subscription mirrors every object event into `/resources/...`, and
each apply or delete result lands in `/resources/applied/last` (and is
appended to `/resources/applied/log`).

Author: KubeAssay Team
"""

import logging
from typing import Any, Callable, Dict, Optional

from kubeassay.core.config import RunConfig
from kubeassay.core.errors import HydrationError, KubeAssayError
from kubeassay.core.models import ObjectOperation, OperationResult, Result, Severity
from kubeassay.core.unstructured import Unstructured, new_namespace
from kubeassay.document.fragment import Fragment, FragmentType, new_module_fragment
from kubeassay.document.reader import Document
from kubeassay.driver.environment import Environment
from kubeassay.driver.handlers import EventHandlers
from kubeassay.driver.hydrate import Object, hydrate, inject_metadata
from kubeassay.driver.kube import ApiError, ResourceDescriptor
from kubeassay.driver.objects import DEFAULT_NAMESPACE, ObjectDriver, abort_process
from kubeassay.policy.builtin import check_source_for
from kubeassay.policy.check import CheckDriver, run_check
from kubeassay.policy.runtime import PolicyError, PolicyModule
from kubeassay.policy.store import StoreNotFoundError
from kubeassay.recorder.recorder import Recorder

logger = logging.getLogger("kubeassay.engine")

APPLIED_LAST = "/resources/applied/last"
APPLIED_LOG = "/resources/applied/log"


def path_for_resource(resource: str, obj: Unstructured) -> str:
    """
    Objects in the default namespace, and cluster-scoped objects, are
    stored at /resources/<resource>/<name>. Everything else is stored at
    /resources/<namespace>/<resource>/<name>.
    """
    namespace = obj.namespace
    if namespace in ("", DEFAULT_NAMESPACE):
        return f"/resources/{resource}/{obj.name}"
    return f"/resources/{namespace}/{resource}/{obj.name}"


class Runner:
    """
    Principal orchestrator for a single test document. A Runner and its
    drivers are used for one document only: `run` releases the object
    driver when it finishes.
    """

    def __init__(self, config: RunConfig, object_driver: ObjectDriver,
                 check_driver: CheckDriver, recorder: Recorder,
                 environment: Environment,
                 abort: Callable[[str], None] = abort_process,
                 sleep: Optional[Callable[[float], None]] = None):
        self.config = config
        self.objects = object_driver
        self.checks = check_driver
        self.recorder = recorder
        self.env = environment
        self.abort = abort
        self.sleep = sleep
        self.runtime = check_driver.runtime

        # Severity of the result that stopped the document, if any.
        self._stopped_by: Optional[Severity] = None
        self._failed = False
        self._builtin_checks: Dict[ObjectOperation, Fragment] = {}

    # --- Recording ---

    def _update(self, *results: Result):
        for r in results:
            if r.is_terminal() and self._stopped_by is None:
                self._stopped_by = r.severity
            if r.is_failed():
                self._failed = True
        self.recorder.update(*results)

    def _skip_marker(self, desc: str) -> Result:
        # Steps skipped after a fatal error count against the document;
        # steps skipped on request do not.
        if self._stopped_by is Severity.SKIP:
            return Result.skip(f"skipping {desc}")
        return Result.error(f"skipping {desc}: an earlier step failed fatally")

    # --- Data document ---

    def _watch_handlers(self) -> EventHandlers:
        def store(resource: ResourceDescriptor, obj: Unstructured):
            self._guard(lambda: self.checks.store_item(
                path_for_resource(resource.resource, obj), obj.content))

        def remove(resource: ResourceDescriptor, obj: Unstructured):
            def _remove():
                try:
                    self.checks.remove_path(path_for_resource(resource.resource, obj))
                except StoreNotFoundError:
                    logger.debug("%s was never stored", obj.reference())
            self._guard(_remove)

        return EventHandlers(
            on_add=store,
            on_update=lambda resource, old, new: store(resource, new),
            on_delete=remove,
        )

    def _guard(self, operation: Callable[[], None]):
        """
        Runs a data document update from a watch callback. There is no test
        step to attach a failure to, so any failure aborts the process.
        """
        try:
            operation()
        except Exception as e:  # pylint: disable=broad-except
            self.abort(f"failed to update the data document: {e}")

    def _store_applied(self, result: OperationResult):
        if result.latest is None:
            return
        self.checks.store_item(APPLIED_LAST, result.latest.content)
        self.checks.append_item(APPLIED_LOG, result.latest.content)

    # --- Checks ---

    def _builtin_check(self, operation: ObjectOperation) -> Fragment:
        if operation not in self._builtin_checks:
            self._builtin_checks[operation] = new_module_fragment(
                self.runtime, check_source_for(operation, self.config.rego_version))
        return self._builtin_checks[operation]

    def _check(self, module: PolicyModule, input: Any = None):
        kwargs = {}
        if self.sleep is not None:
            kwargs["sleep"] = self.sleep

        try:
            results = run_check(self.checks, module, self.config.check_timeout,
                                input=input, interval=self.config.poll_interval, **kwargs)
        except PolicyError as e:
            self._update(Result.fatal(f"check evaluation failed: {e}"))
            return

        if not results:
            self._update(Result.info("check passed"))
            return
        self._update(*[r.as_result() for r in results])

    # --- Objects ---

    def _match(self, target: Unstructured) -> bool:
        """
        Resolves an object with no name to the newest object from this run
        with the same kind, namespace and labels.
        """
        matches = self.objects.select(target)
        if not matches:
            self._update(Result.fatal(
                f"no {target.kind} objects from this run match labels {target.labels}"))
            return False

        found = matches[0]
        target.name = found.name
        if found.namespace:
            target.namespace = found.namespace
        self._update(Result.info(f"matched {found.reference()}"))
        return True

    def _ensure_namespace(self, target: Unstructured) -> Optional[OperationResult]:
        """
        Creates the object's namespace if it is missing, to reduce test
        document boilerplate. Returns the failed result if creation failed.
        """
        name = target.namespace
        if not name or self.objects.namespace_exists(name):
            return None

        ns = new_namespace(name)
        inject_metadata(ns, self.env)
        result = self.objects.apply(ns)
        if not result.succeeded():
            return result

        self._update(Result.info(f"created implicit namespace '{name}'"))
        return None

    def _run_object(self, fragment: Fragment):
        try:
            obj: Object = hydrate(fragment.data, self.env, self.runtime)
        except HydrationError as e:
            self._update(Result.fatal(f"failed to hydrate object: {e}"))
            return

        target = obj.target
        try:
            if not target.name and not target.generate_name and not self._match(target):
                return

            if obj.operation is ObjectOperation.DELETE:
                result = self.objects.delete(target)
            else:
                result = self._ensure_namespace(target) or self.objects.apply(target)
        except (KubeAssayError, ApiError) as e:
            self._update(Result.fatal(f"unable to {obj.operation} object: {e}"))
            return

        if result.succeeded():
            self._update(Result.info(f"{obj.operation} {result.target}: ok"))
        else:
            self._update(Result.info(
                f"{obj.operation} {result.target}: {result.error.get('reason')}"))

        self._store_applied(result)

        check = obj.check or self._builtin_check(obj.operation)
        self._check(check.module(), result.as_input())

    # --- Driving ---

    def _decode(self, document: Document):
        """Classifies every fragment so that syntax errors surface first."""
        for fragment in document.parts:
            ftype, err = fragment.decode(self.runtime)
            if ftype is FragmentType.INVALID:
                self._update(Result.fatal(f"fragment at {fragment.location}: {err}"))
        self._update(Result.info(f"decoded {len(document.parts)} fragments"))

    def _run_fragment(self, fragment: Fragment):
        if fragment.type is FragmentType.OBJECT:
            self._run_object(fragment)
        elif fragment.type is FragmentType.MODULE:
            self._check(fragment.module())
        else:
            self._update(Result.info(f"ignoring unknown fragment at {fragment.location}"))

    def _cleanup(self):
        failures = self.objects.delete_all()
        for ref, status in failures:
            self._update(Result.warn(
                f"failed to delete {ref}: {status.get('message') or status.get('reason')}"))
        if not failures:
            self._update(Result.info("deleted all adopted objects"))

    def run(self, document: Document) -> bool:
        """Runs the document. Returns True if it passed."""
        with self.recorder.document(document.name or "<stdin>"):
            cancel_watch = self.objects.watch(self._watch_handlers())
            try:
                with self.recorder.step("decode fragments"):
                    self._decode(document)

                for fragment in document.parts:
                    desc = f"{fragment.type} fragment at {fragment.location}"
                    with self.recorder.step(desc):
                        if not self.recorder.should_continue():
                            self._update(self._skip_marker(desc))
                            continue
                        self._run_fragment(fragment)

                if not self.config.preserve:
                    with self.recorder.step("delete adopted objects"):
                        self._cleanup()
            finally:
                cancel_watch()
                self.objects.done()

        return not self._failed
