"""SanitizationGateway: initialization, profiles, clean() shapes and locking."""

from __future__ import annotations

import logging
import os
import stat
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from purifier_gateway.config.purifier import ConfigRepository
from purifier_gateway.core.definitions import ElementDefinition
from purifier_gateway.core.errors import (
    ConfigLockedError,
    DefinitionError,
    PurifierError,
    StorageError,
    UnsupportedInputError,
)
from purifier_gateway.core.gateway import SanitizationGateway


def _mode(path: Path) -> int:
    return stat.S_IMODE(os.stat(path).st_mode)


def test_clean_strips_scripts_and_event_handlers(gateway: SanitizationGateway) -> None:
    assert gateway.clean('<p onclick="x()">Hi<script>alert(1)</script></p>') == "<p>Hi</p>"


def test_clean_drops_javascript_urls(gateway: SanitizationGateway) -> None:
    assert gateway.clean('<a href="javascript:alert(1)">x</a>') == "<a>x</a>"
    assert gateway.clean('<a href="https://example.com">x</a>') == '<a href="https://example.com">x</a>'


@pytest.mark.parametrize(
    "html",
    [
        "<p>a &amp; b</p>",
        "plain < text",
        "<b>bold<i>nested</b>",
        "<script>x</script>text",
        '<a href="http://x.com" onclick="y">l</a>',
        '<div><foo bar="1">z</foo></div>',
    ],
)
@pytest.mark.parametrize("profile", [None, "custom", "strict"])
def test_clean_is_idempotent(gateway: SanitizationGateway, html: str, profile) -> None:
    once = gateway.clean(html, profile)
    assert gateway.clean(once, profile) == once


def test_clean_sequence_matches_elementwise(gateway: SanitizationGateway) -> None:
    items = ["<b>a</b>", "<script>b</script>c", "<i onclick='x'>d</i>"]

    cleaned = gateway.clean(items)

    assert isinstance(cleaned, list)
    assert cleaned == [gateway.clean(item) for item in items]


def test_clean_preserves_tuple_and_mapping_shapes(gateway: SanitizationGateway) -> None:
    assert gateway.clean(("<b>a</b>", "<u>b</u>"), "strict") == ("<b>a</b>", "b")
    assert gateway.clean({"title": "<i>t</i>", "body": "<script>x</script>y"}, "strict") == {
        "title": "<i>t</i>",
        "body": "y",
    }


@pytest.mark.parametrize("value", [["<b>a</b>", ["nested"]], 42, None, {"k": 1}])
def test_clean_rejects_unsupported_shapes(gateway: SanitizationGateway, value) -> None:
    with pytest.raises(UnsupportedInputError):
        gateway.clean(value)


def test_clean_bytes_roundtrip_in_declared_encoding(tmp_path: Path) -> None:
    gw = SanitizationGateway().initialize(encoding="ISO-8859-1", cache_path=None)

    cleaned = gw.clean("<b>café</b><script>x</script>".encode("latin-1"))

    assert cleaned == "<b>café</b>".encode("latin-1")


def test_clean_replaces_malformed_bytes(gateway: SanitizationGateway) -> None:
    assert gateway.clean(b"<b>\xff</b>") == "<b>�</b>".encode("utf-8")


def test_custom_element_only_in_its_profile(gateway: SanitizationGateway) -> None:
    html = "<foo bar='x'>hi</foo>"

    assert gateway.clean(html, "custom") == '<foo bar="x">hi</foo>'
    assert gateway.clean(html, "default") == "hi"


def test_custom_element_missing_required_attribute_is_unwrapped(gateway: SanitizationGateway) -> None:
    assert gateway.clean("<foo>hi</foo>", "custom") == "hi"


def test_unknown_profile_falls_back_to_default_with_one_warning(
    gateway: SanitizationGateway, caplog: pytest.LogCaptureFixture
) -> None:
    html = "<foo bar='x'>hi</foo><em>e</em>"
    caplog.set_level(logging.WARNING, logger="purifier_gateway.core.gateway")

    assert gateway.clean(html, "nope") == gateway.clean(html, "default")
    gateway.clean(html, "nope")

    warnings = [r for r in caplog.records if "Unknown purifier profile 'nope'" in r.getMessage()]
    assert len(warnings) == 1


def test_initialize_creates_cache_dir_with_mode(tmp_path: Path) -> None:
    cache = tmp_path / "a" / "b" / "cache"

    SanitizationGateway().initialize(cache_path=cache, cache_file_mode=0o750)

    assert cache.is_dir()
    assert _mode(cache) == 0o750


def test_second_initialize_keeps_existing_permissions(tmp_path: Path) -> None:
    cache = tmp_path / "cache"
    SanitizationGateway().initialize(cache_path=cache, cache_file_mode=0o750)
    os.chmod(cache, 0o700)

    SanitizationGateway().initialize(cache_path=cache, cache_file_mode=0o750)

    assert _mode(cache) == 0o700


def test_initialize_fails_when_cache_path_is_a_file(tmp_path: Path) -> None:
    blocker = tmp_path / "cache"
    blocker.write_text("not a dir", encoding="utf-8")

    with pytest.raises(StorageError) as exc:
        SanitizationGateway().initialize(cache_path=blocker)

    assert exc.value.path == str(blocker)


def test_initialize_fails_when_parent_is_a_file(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")

    with pytest.raises(StorageError):
        SanitizationGateway().initialize(cache_path=blocker / "cache")


def test_empty_cache_path_disables_cache(tmp_path: Path) -> None:
    gw = SanitizationGateway().initialize(cache_path="")

    assert gw.cache_path is None
    assert gw.get_config().definition_cache is None


def test_finalized_gateway_rejects_registration(gateway: SanitizationGateway) -> None:
    before = gateway.clean("<baz>x</baz><foo bar='1'>y</foo>", "custom")

    with pytest.raises(ConfigLockedError):
        gateway.add_element("custom", ElementDefinition("baz", "Inline", "Flow", "Common"))
    with pytest.raises(ConfigLockedError):
        gateway.add_attribute("custom", ["foo", "qux", "Text"])

    assert gateway.clean("<baz>x</baz><foo bar='1'>y</foo>", "custom") == before


def test_unlocked_gateway_accepts_late_registration(open_gateway: SanitizationGateway) -> None:
    assert open_gateway.clean("<baz>x</baz>") == "x"

    assert open_gateway.add_element("default", ["baz", "Inline", "Flow", "Common"]) is True
    assert open_gateway.add_attribute("default", ["baz", "level", "Number"]) is True

    assert open_gateway.clean('<baz level="3" onclick="x">x</baz>') == '<baz level="3">x</baz>'
    assert open_gateway.clean('<baz level="high">x</baz>') == "<baz>x</baz>"


def test_registration_on_unknown_profile_raises(open_gateway: SanitizationGateway) -> None:
    with pytest.raises(ValueError):
        open_gateway.add_element("missing", ["baz", "Inline", "Flow", "Common"])


def test_invalid_definition_record_fails_initialize(tmp_path: Path) -> None:
    with pytest.raises(DefinitionError):
        SanitizationGateway().initialize(
            profiles={"x": {"custom_elements": [["bad", "Inline", "Sometimes", "Common"]]}}
        )


def test_process_wide_settings_override_profile_directives(tmp_path: Path) -> None:
    gw = SanitizationGateway().initialize(
        encoding="UTF-8",
        cache_path=tmp_path / "c",
        cache_file_mode=0o700,
        profiles={"x": {"Core.Encoding": "ISO-8859-1", "Cache.SerializerPath": "/elsewhere"}},
    )

    config = gw.get_config("x")
    assert config.get("Core.Encoding") == "utf-8"
    assert config.get("Cache.SerializerPath") == str(tmp_path / "c")
    assert config.get("Cache.SerializerPermissions") == 0o700


def test_named_profiles_do_not_inherit_default_directives() -> None:
    gw = SanitizationGateway().initialize(profiles={"default": {"HTML.AllowedElements": "b"}, "other": {}})

    assert gw.clean("<b>x</b><i>y</i>") == "<b>x</b>y"
    assert gw.clean("<b>x</b><i>y</i>", "other") == "<b>x</b><i>y</i>"


def test_clean_before_initialize_raises() -> None:
    with pytest.raises(PurifierError):
        SanitizationGateway().clean("<b>x</b>")


def test_from_config_applies_legacy_definitions_to_default_profile(tmp_path: Path) -> None:
    repository = ConfigRepository.from_mapping(
        encoding="UTF-8",
        cache_path=str(tmp_path / "cache"),
        cache_file_mode=0o755,
        finalize=True,
        settings={
            "default": {"HTML.Allowed": "p,a[href]"},
            "other": {"HTML.Allowed": "p,a[href]"},
            "custom_attributes": [["a", "target", "Enum#_blank,_self"]],
            "custom_elements": [["u", "Inline", "Inline", "Common"]],
        },
    )

    gw = SanitizationGateway.from_config(repository)
    html = '<p><a href="/x" target="_blank">l</a><u>u</u></p>'

    assert sorted(gw.profiles) == ["default", "other"]
    assert gw.clean(html) == '<p><a href="/x" target="_blank">l</a><u>u</u></p>'
    assert gw.clean(html, "other") == '<p><a href="/x">l</a>u</p>'


def test_get_instance_returns_engine(gateway: SanitizationGateway) -> None:
    engine = gateway.get_instance()

    assert engine.purify("<b>x</b><script>y</script>") == "<b>x</b>"


def test_concurrent_clean_matches_serial_output(gateway: SanitizationGateway) -> None:
    inputs = [
        f'<p class="c{i}">item {i}<b>bold{i}</b><script>x{i}</script><a href="/p{i}" onclick="y">l{i}</a></p>'
        for i in range(16)
    ]
    expected = [gateway.clean(html) for html in inputs]

    def worker(index: int):
        return [gateway.clean(inputs[index]) for _ in range(100)]

    with ThreadPoolExecutor(max_workers=len(inputs)) as pool:
        results = list(pool.map(worker, range(len(inputs))))

    for index, outputs in enumerate(results):
        assert set(outputs) == {expected[index]}


def test_unknown_profile_memory_is_bounded(gateway: SanitizationGateway) -> None:
    limit = SanitizationGateway.MAX_WARNED_PROFILES

    for i in range(limit + 50):
        assert gateway.clean("<b>x</b>", f"missing-{i}") == "<b>x</b>"

    assert len(gateway._warned_profiles) == limit


def test_from_config_without_finalize_leaves_profiles_unlocked() -> None:
    gw = SanitizationGateway.from_config(ConfigRepository.from_mapping(settings={"default": {}}))

    assert gw.finalized is False
    assert gw.add_element("default", ["baz", "Inline", "Flow", "Common"]) is True
    assert gw.clean("<baz>x</baz>") == "<baz>x</baz>"


def test_cache_stats(gateway: SanitizationGateway, cache_dir: Path) -> None:
    stats = gateway.cache_stats()

    assert stats["path"] == str(cache_dir / "HTML")
    assert stats["entries"] >= 1
    assert SanitizationGateway().initialize(cache_path=None).cache_stats() is None
