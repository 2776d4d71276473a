"""ConfigRepository lookups and the shipped purifier settings."""

from __future__ import annotations

from pathlib import Path

import pytest
from flask import Config

from purifier_gateway.config.purifier import ConfigRepository, PurifierConfig
from purifier_gateway.core.gateway import SanitizationGateway


def test_dotted_lookup() -> None:
    repository = ConfigRepository.from_mapping({"settings": {"default": {"AutoFormat.Linkify": True}}}, finalize=False)

    assert repository.get("settings.default") == {"AutoFormat.Linkify": True}
    assert repository.get("finalize") is False
    assert repository.get("settings.missing", "fallback") == "fallback"
    assert repository.has("settings.default")
    assert not repository.has("settings.default.nothing")


def test_values_are_read_only_copies() -> None:
    repository = ConfigRepository.from_mapping(settings={"default": {"HTML.AllowedElements": "b"}})

    repository.get("settings")["default"]["HTML.AllowedElements"] = "script"

    assert repository["settings"]["default"]["HTML.AllowedElements"] == "b"


def test_missing_key_raises() -> None:
    with pytest.raises(KeyError):
        ConfigRepository()["encoding"]


def test_from_object_lowercases_settings() -> None:
    repository = ConfigRepository.from_object(PurifierConfig)

    assert set(repository) == {"encoding", "cache_path", "cache_file_mode", "finalize", "settings"}
    assert repository.get("encoding") == "UTF-8"
    assert repository.get("cache_file_mode") == 0o755


def test_from_flask_config_reads_namespace_over_defaults(tmp_path: Path) -> None:
    config = Config(str(tmp_path))
    config["PURIFIER_CACHE_PATH"] = str(tmp_path / "cache")
    config["PURIFIER_FINALIZE"] = False
    config["SECRET_KEY"] = "unrelated"

    repository = ConfigRepository.from_flask_config(config)

    assert repository.get("cache_path") == str(tmp_path / "cache")
    assert repository.get("finalize") is False
    assert repository.get("encoding") == "UTF-8"
    assert "secret_key" not in repository
    assert "html5" in repository.get("settings")


@pytest.fixture
def shipped_gateway(tmp_path: Path) -> SanitizationGateway:
    items = dict(ConfigRepository.from_object(PurifierConfig))
    items["cache_path"] = str(tmp_path / "cache")
    return SanitizationGateway.from_config(ConfigRepository(items))


def test_shipped_profiles(shipped_gateway: SanitizationGateway) -> None:
    assert sorted(shipped_gateway.profiles) == ["default", "html5", "plain", "rich"]
    assert shipped_gateway.finalized


def test_shipped_default_profile(shipped_gateway: SanitizationGateway) -> None:
    html = '<p><a href="/x" target="_top">l</a><u>u</u><code>c</code></p><p></p>'

    assert shipped_gateway.clean(html) == '<p><a href="/x" target="_top">l</a><u>u</u>c</p>'


def test_shipped_plain_profile(shipped_gateway: SanitizationGateway) -> None:
    assert shipped_gateway.clean("<p><b>bold</b> text</p>", "plain") == "bold text"


def test_shipped_html5_profile(shipped_gateway: SanitizationGateway) -> None:
    html = "<section><hgroup><h1>T</h1><p>x</p></hgroup><p><time datetime=\"2020-01-01\">now</time></p></section>"

    assert shipped_gateway.clean(html, "html5") == (
        '<section><hgroup><h1>T</h1></hgroup><p><time datetime="2020-01-01">now</time></p></section>'
    )
