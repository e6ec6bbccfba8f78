import datetime as dt

import pytest

from flowmode.core.errors import ConfigInvalid
from flowmode.utils.config import (
    Config,
    Paths,
    build_session_config,
    find_config_file,
    load_config,
    parse_config,
)

CONFIG_TOML = """
block_list = ["https://news.ycombinator.com/", "127.0.0.1 reddit.com"]
app_block_list = ["steam"]
whitelist = ["docs.python.org"]
on_hosts_denied = "abort"
redirect_address = "0.0.0.0"
slack_webhook_url = "https://hooks.slack.invalid/T000/B000"

[pomodoro_defaults]
pomodoro = "50m"
break = "10m"
cycles = 2
"""


def test_defaults_without_config_file(flowmode_home):
    config = load_config()
    assert config == Config()
    assert "facebook.com" in config.block_list
    assert config.pomodoro_defaults.pomodoro == "25m"


def test_load_from_home_directory(flowmode_home):
    flowmode_home.mkdir()
    (flowmode_home / "config.toml").write_text(CONFIG_TOML)
    config = load_config()
    assert config.source == str(flowmode_home / "config.toml")
    assert config.app_block_list == ["steam"]
    assert config.on_hosts_denied == "abort"
    assert config.redirect_address == "0.0.0.0"
    assert config.pomodoro_defaults.short_break == "10m"
    assert config.pomodoro_defaults.long_break == "15m"
    assert config.pomodoro_defaults.cycles == 2


def test_working_directory_config_wins(flowmode_home, tmp_path):
    flowmode_home.mkdir()
    (flowmode_home / "config.toml").write_text('app_block_list = ["home"]\n')
    (tmp_path / "config.toml").write_text('app_block_list = ["cwd"]\n')
    assert load_config().app_block_list == ["cwd"]


def test_blocklist_normalizes_entries():
    blocklist = parse_config({"block_list": ["https://news.ycombinator.com/", "127.0.0.1 reddit.com"]}).blocklist()
    assert blocklist.domains == ("news.ycombinator.com", "reddit.com", "www.reddit.com")


def test_explicit_missing_file(flowmode_home):
    with pytest.raises(ConfigInvalid, match="not found"):
        find_config_file("missing.toml", Paths.default())


def test_invalid_toml(flowmode_home, tmp_path):
    path = tmp_path / "bad.toml"
    path.write_text("block_list = [unterminated\n")
    with pytest.raises(ConfigInvalid, match="Invalid TOML"):
        load_config(str(path))


@pytest.mark.parametrize("data,message", [
    ({"block_list": "facebook.com"}, "list of strings"),
    ({"app_block_list": [1, 2]}, "list of strings"),
    ({"expand_www": "yes"}, "bool"),
    ({"on_hosts_denied": "ignore"}, "on_hosts_denied"),
    ({"pomodoro_defaults": "25m"}, "table"),
    ({"pomodoro_defaults": {"cycles": "four"}}, "cycles"),
])
def test_invalid_values(data, message):
    with pytest.raises(ConfigInvalid, match=message):
        parse_config(data)


def test_pomodoro_defaults_can_be_disabled():
    config = parse_config({"pomodoro_defaults": False})
    assert config.pomodoro_defaults is None
    assert build_session_config(config, "1h").pomodoro is None


def test_session_uses_pomodoro_defaults():
    session = build_session_config(Config(), "2h", task="thesis")
    assert session.duration == dt.timedelta(hours=2)
    assert session.pomodoro.work == dt.timedelta(minutes=25)
    assert session.pomodoro.long_break == dt.timedelta(minutes=15)
    assert session.task == "thesis"


def test_cli_values_override_defaults():
    session = build_session_config(Config(), "2h", pomodoro="45m", short_break="0m", cycles=3)
    assert session.pomodoro.work == dt.timedelta(minutes=45)
    assert session.pomodoro.short_break == dt.timedelta(0)
    assert session.pomodoro.cycles == 3


def test_flags_enable_pomodoro_when_defaults_disabled():
    config = parse_config({"pomodoro_defaults": False})
    session = build_session_config(config, "1h", pomodoro="20m")
    assert session.pomodoro.work == dt.timedelta(minutes=20)
    assert session.pomodoro.short_break == dt.timedelta(minutes=5)


def test_no_pomodoro_flag():
    session = build_session_config(Config(), "10m", no_pomodoro=True)
    assert session.pomodoro is None


def test_short_session_without_flags_is_single_countdown():
    session = build_session_config(Config(), "10m")
    assert session.pomodoro is None
    assert session.duration == dt.timedelta(minutes=10)


def test_short_session_with_explicit_pomodoro_rejected():
    with pytest.raises(ConfigInvalid, match="at least one Pomodoro"):
        build_session_config(Config(), "10m", pomodoro="25m")


def test_whitelist_and_policy_carried_over():
    config = parse_config({"on_hosts_denied": "user-hosts"})
    session = build_session_config(config, "1h", whitelist=True, no_pomodoro=True)
    assert session.whitelist_mode
    assert session.on_hosts_denied == "user-hosts"


def test_paths_follow_flowmode_home(flowmode_home):
    paths = Paths.default()
    assert paths.home == str(flowmode_home)
    assert paths.marker_file == str(flowmode_home / "session.json")
    paths.ensure()
    assert flowmode_home.is_dir()
