import json

import pytest

from filmclub_bot import (
    AdminRegistry,
    build_arg_parser,
    load_config,
    load_secrets,
    normalize_config,
    parse_admin_ids,
    read_env,
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("BOT_TOKEN", "ADMIN_IDS", "GITHUB_TOKEN", "VK_ACCESS_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def write_env(path, **values):
    path.write_text("".join(f"{key}={value}\n" for key, value in values.items()), encoding="utf-8")
    return path


def test_defaults_are_valid():
    config = normalize_config({})

    assert config["runtime"]["console_mode"] == "dashboard"
    assert config["github"]["repository"] == "ulysses-club/odissea"
    assert config["github"]["max_retries"] == 3
    assert config["notifications"]["day_of_week"] == "fri"
    assert config["runtime"]["max_scores_per_round"] == 0


def test_numeric_settings_are_clamped():
    config = normalize_config(
        {
            "runtime": {"dashboard_event_lines": 100, "max_scores_per_round": -4},
            "telegram": {"timeout_seconds": 120, "poll_timeout_seconds": 90},
            "github": {"timeout_seconds": 1, "max_retries": 10},
            "vk": {"max_retries": 0},
        }
    )

    assert config["runtime"]["dashboard_event_lines"] == 20
    assert config["runtime"]["max_scores_per_round"] == 0
    assert config["telegram"]["timeout_seconds"] == 30
    assert config["telegram"]["poll_timeout_seconds"] == 50
    assert config["github"]["timeout_seconds"] == 5
    assert config["github"]["max_retries"] == 3
    assert config["vk"]["max_retries"] == 1


def test_github_retries_at_least_twice():
    assert normalize_config({"github": {"max_retries": 1}})["github"]["max_retries"] == 2


@pytest.mark.parametrize(
    "override, message",
    [
        ({"runtime": {"console_mode": "fancy"}}, "console_mode"),
        ({"notifications": {"day_of_week": "friday"}}, "day_of_week"),
        ({"notifications": {"hour": 24}}, "hour"),
        ({"github": {"repository": "  "}}, "repository"),
        ({"sheets": {"spreadsheet_id": "YOUR_SPREADSHEET_ID"}}, "placeholder"),
    ],
)
def test_invalid_settings_are_rejected(override, message):
    with pytest.raises(ValueError, match=message):
        normalize_config(override)


def test_placeholder_spreadsheet_allowed_when_disabled():
    config = normalize_config({"sheets": {"enabled": False, "spreadsheet_id": "YOUR_SPREADSHEET_ID"}})

    assert config["sheets"]["enabled"] is False


def test_load_config_merges_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"vk": {"group_id": "123"}, "club": {"name": "Ulysses"}}), encoding="utf-8")

    config = load_config(path)

    assert config["vk"]["group_id"] == 123
    assert config["club"]["name"] == "Ulysses"
    assert config["club"]["site_url"].startswith("https://")


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.json")


def test_load_config_rejects_non_object(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(ValueError, match="JSON object"):
        load_config(path)


def test_parse_admin_ids():
    assert parse_admin_ids(" 1, 2,,3 ") == frozenset({"1", "2", "3"})
    assert parse_admin_ids("") == frozenset()


def test_env_file_overrides_process_environment(tmp_path, clean_env):
    clean_env.setenv("ADMIN_IDS", "999")
    env_file = write_env(tmp_path / ".env", ADMIN_IDS="100")

    assert read_env(env_file)["ADMIN_IDS"] == "100"
    assert read_env(tmp_path / "missing.env")["ADMIN_IDS"] == "999"


def test_load_secrets_lists_missing_variables(tmp_path, clean_env):
    env_file = write_env(tmp_path / ".env", BOT_TOKEN="YOUR_BOT_TOKEN")

    with pytest.raises(ValueError) as excinfo:
        load_secrets(env_file)

    assert str(excinfo.value) == "Missing required environment variables: BOT_TOKEN, ADMIN_IDS"


def test_load_secrets_drops_placeholder_optional_tokens(tmp_path, clean_env):
    env_file = write_env(
        tmp_path / ".env",
        BOT_TOKEN="123:ABC",
        ADMIN_IDS="100,200",
        GITHUB_TOKEN="YOUR_GITHUB_TOKEN",
        VK_ACCESS_TOKEN="vk1.a.token",
    )

    secrets = load_secrets(env_file)

    assert secrets.bot_token == "123:ABC"
    assert secrets.admin_ids == frozenset({"100", "200"})
    assert secrets.github_token == ""
    assert secrets.vk_access_token == "vk1.a.token"


def test_admin_registry_reload(tmp_path, clean_env):
    env_file = write_env(tmp_path / ".env", ADMIN_IDS="100")
    registry = AdminRegistry(env_file=env_file)
    assert registry.snapshot() == frozenset({"100"})

    write_env(env_file, ADMIN_IDS="100,300")
    registry.reload()
    assert registry.is_admin(300)

    write_env(env_file, ADMIN_IDS="")
    assert registry.reload() == frozenset({"100", "300"})


def test_arg_parser_defaults():
    args = build_arg_parser().parse_args([])

    assert args.config == "config.json"
    assert args.env_file is None
