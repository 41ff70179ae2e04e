import pytest

from proxy_lite.cli import build_parser, load_rules, main
from proxy_lite.models import FilterMode, ProxySettings


def test_defaults_to_empty_deny_list():
    rules = load_rules(build_parser().parse_args([]))
    assert rules.mode is FilterMode.DENY
    assert rules.domains == frozenset()
    assert rules.is_allowed("anything.example:443")


def test_repeated_allow_flags():
    args = build_parser().parse_args(["--allow", "a.example", "--allow", "b.example"])
    rules = load_rules(args)
    assert rules.mode is FilterMode.ALLOW
    assert rules.domains == frozenset({"a.example", "b.example"})


def test_filter_sources_are_exclusive():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--allow", "a.example", "--deny", "b.example"])


def test_filter_file(tmp_path):
    path = tmp_path / "rules.toml"
    path.write_text('mode = "Whitelist"\ndomains = ["ok.example"]\n')
    rules = load_rules(build_parser().parse_args(["--filter-file", str(path)]))
    assert rules.mode is FilterMode.ALLOW


def test_missing_filter_file_exits_with_config_error(tmp_path):
    assert main(["--filter-file", str(tmp_path / "missing.toml")]) == 2


def test_invalid_port_is_rejected():
    assert main(["--port", "70000"]) == 2


def test_settings_defaults():
    settings = ProxySettings()
    assert (settings.host, settings.port) == ("127.0.0.1", 8080)
    assert settings.connect_timeout is None
    assert settings.request_timeout is None
    assert ProxySettings(log_level="debug").log_level == "DEBUG"


@pytest.mark.parametrize(
    "argv",
    [
        ["--deny", "blocked.example:443"],
        ["--allow", "ok.example", "--allow", " "],
    ],
)
def test_invalid_domain_flags_exit_with_config_error(argv):
    assert main(argv) == 2
