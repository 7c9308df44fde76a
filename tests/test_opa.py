import json
import shutil
import subprocess

import pytest

from kubeassay.core.models import ObjectOperation, Severity
from kubeassay.policy.builtin import check_source_for
from kubeassay.policy.check import CheckDriver
from kubeassay.policy.opa import OpaRuntime, _extract_errors, _package_from_ast, _rule_names_from_ast
from kubeassay.policy.runtime import PolicyCompileError, PolicyError, PolicyParseError, parse_check_fragment

requires_opa = pytest.mark.skipif(shutil.which("opa") is None, reason="opa binary not installed")


def completed(returncode=1, stdout="", stderr=""):
    return subprocess.CompletedProcess(["opa"], returncode, stdout=stdout, stderr=stderr)


def test_errors_are_read_from_json_output():
    doc = {"errors": [{
        "code": "rego_parse_error",
        "message": "unexpected eof token",
        "location": {"file": "x.rego", "row": 3, "col": 1},
    }]}
    message, errors = _extract_errors(completed(stdout=json.dumps(doc)))

    assert message == "rego_parse_error: line 2: unexpected eof token"
    assert errors == doc["errors"]


def test_unstructured_errors_fall_back_to_stderr():
    message, errors = _extract_errors(completed(stderr="flag provided but not defined\n"))
    assert message == "flag provided but not defined"
    assert errors == []


def test_ast_helpers():
    ast = {
        "package": {"path": [{"type": "var", "value": "data"},
                             {"type": "string", "value": "check"},
                             {"type": "string", "value": "abc"}]},
        "rules": [
            {"head": {"name": "error"}},
            {"head": {"ref": [{"type": "var", "value": "warn_old"}]}},
            {"head": {}},
        ],
    }
    assert _package_from_ast(ast) == "check.abc"
    assert _rule_names_from_ast(ast) == ["error", "warn_old"]


def test_missing_binary_is_a_policy_error():
    runtime = OpaRuntime(binary="/nonexistent/opa")
    with pytest.raises(PolicyError) as info:
        runtime.parse("package x\nerror { true }")
    assert "not found" in str(info.value)


@requires_opa
def test_parse_and_compile():
    runtime = OpaRuntime()
    module = parse_check_fragment(runtime, 'error[msg] { msg := "nope" }\nhelper { true }')

    assert module.package.startswith("check.")
    assert module.rules == ["error", "helper"]
    runtime.compile(module)


@requires_opa
def test_parse_errors():
    with pytest.raises(PolicyParseError):
        parse_check_fragment(OpaRuntime(), "error {")


@requires_opa
def test_compile_errors():
    runtime = OpaRuntime()
    module = parse_check_fragment(runtime, "error { undefined_thing }")
    with pytest.raises(PolicyCompileError):
        runtime.compile(module)


@requires_opa
def test_checks_against_the_data_document():
    runtime = OpaRuntime()
    driver = CheckDriver(runtime)
    driver.store_item("/resources/configmaps/settings", {"data": {"mode": "slow"}})

    module = parse_check_fragment(runtime, """
error[msg] {
    data.resources.configmaps.settings.data.mode != "fast"
    msg := "mode is not fast"
}

warn_always {
    true
}
""")
    runtime.compile(module)
    results = driver.eval(module)

    assert [(r.severity, r.message) for r in results] == [
        (Severity.ERROR, "mode is not fast"),
        (Severity.WARN, 'rule "warn_always" was true'),
    ]


@requires_opa
def test_builtin_delete_check_ignores_not_found():
    runtime = OpaRuntime()
    driver = CheckDriver(runtime)
    module = parse_check_fragment(runtime, check_source_for(ObjectOperation.DELETE))

    missing = {"error": {"reason": "NotFound", "message": "gone"}, "latest": None, "target": {}}
    forbidden = {"error": {"reason": "Forbidden", "message": "denied"}, "latest": None, "target": {}}

    assert driver.eval(module, missing) == []
    assert [r.message for r in driver.eval(module, forbidden)] == ["Forbidden: denied"]


@pytest.mark.parametrize("version_output, rego_version, flags", [
    ("Version: 1.2.0\nBuild Commit: abc\n", "v0", ["--v0-compatible"]),
    ("Version: 1.2.0\nBuild Commit: abc\n", "v1", []),
    ("Version: 0.68.0\nBuild Commit: abc\n", "v0", []),
    ("Version: 0.68.0\nBuild Commit: abc\n", "v1", ["--v1-compatible"]),
])
def test_compatibility_flags_follow_the_opa_version(monkeypatch, version_output, rego_version, flags):
    runtime = OpaRuntime(rego_version=rego_version)
    calls = []

    def run(args, stdin=None):
        calls.append(list(args))
        return completed(returncode=0, stdout=version_output)

    monkeypatch.setattr(runtime, "_run", run)

    assert runtime._compat() == flags
    assert runtime._compat() == flags
    assert calls == [["version"]]


def test_unreadable_version_assumes_opa_1(monkeypatch):
    runtime = OpaRuntime()
    monkeypatch.setattr(runtime, "_run", lambda args, stdin=None: completed(returncode=1))

    assert runtime.major_version() == 1


def test_unknown_rego_versions_are_rejected():
    with pytest.raises(ValueError):
        OpaRuntime(rego_version="v2")


def test_builtin_checks_in_rego_v1():
    source = check_source_for(ObjectOperation.UPDATE, "v1")
    assert "error contains msg if {" in source
    assert "error[msg]" not in source
    assert "error[msg] {" in check_source_for(ObjectOperation.DELETE)
