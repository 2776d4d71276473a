# core/gateway.py
"""
Sanitization gateway
Assembles per-profile engine configuration from application settings and
forwards clean() calls to the engine
"""

import os
import logging
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, Optional, Any, Mapping, Union

from purifier_gateway.core.cache import DefinitionCache
from purifier_gateway.core.definitions import AttributeDefinition, ElementDefinition
from purifier_gateway.core.engine import EngineConfig, Purifier
from purifier_gateway.core.errors import ConfigLockedError, PurifierError, StorageError, UnsupportedInputError

# Configure logging
logger = logging.getLogger(__name__)


class SanitizationGateway:
    """
    Configurable HTML sanitization gateway

    Initialize once, then call clean() as often as needed. With
    ``finalize=True`` every profile is locked after initialization and the
    gateway is safe for concurrent clean() calls. With ``finalize=False``
    definitions may still be registered, but registration must not overlap
    with clean() calls; registration does no locking of its own.
    """

    DEFAULT_PROFILE = 'default'

    # Profile keys that carry definitions rather than engine directives
    DEFINITION_KEYS = ('custom_definition', 'custom_attributes', 'custom_elements')

    # Unknown profile names remembered for warn-once logging
    MAX_WARNED_PROFILES = 64

    def __init__(self):
        self.encoding: Optional[str] = None
        self.cache_path: Optional[str] = None
        self.cache_file_mode: int = 0o755
        self.finalized = False
        self._configs: Dict[str, EngineConfig] = {}
        self._purifier: Optional[Purifier] = None
        self._warned_profiles: 'OrderedDict[str, None]' = OrderedDict()
        self._warned_lock = threading.Lock()

    @classmethod
    def from_config(cls, repository) -> 'SanitizationGateway':
        """
        Build and initialize a gateway from a config repository

        Legacy ``settings.custom_*`` entries apply to the default profile
        unless the default profile declares its own.
        """
        settings = repository.get('settings') or {}

        profiles = {
            name: dict(value) for name, value in settings.items()
            if name not in cls.DEFINITION_KEYS and isinstance(value, Mapping)
        }
        default = profiles.setdefault(cls.DEFAULT_PROFILE, {})
        for key in cls.DEFINITION_KEYS:
            if settings.get(key) and key not in default:
                default[key] = settings[key]

        gateway = cls()
        return gateway.initialize(
            encoding=repository.get('encoding', 'UTF-8'),
            cache_path=repository.get('cache_path'),
            cache_file_mode=repository.get('cache_file_mode', 0o755),
            profiles=profiles,
            finalize=repository.get('finalize', False)
        )

    def initialize(self,
                   encoding: str = 'UTF-8',
                   cache_path: Optional[Union[str, os.PathLike]] = None,
                   cache_file_mode: int = 0o755,
                   profiles: Optional[Mapping[str, Mapping[str, Any]]] = None,
                   finalize: bool = True) -> 'SanitizationGateway':
        """
        Prepare the cache directory and one engine config per profile

        Args:
            encoding: Character encoding for every profile
            cache_path: Definition cache directory, empty to disable caching
            cache_file_mode: Permission mask for the cache directory and files
            profiles: Profile name -> engine directives and custom definitions
            finalize: Lock every profile once initialized

        Raises:
            StorageError: cache directory cannot be created
            DefinitionError: a custom definition record is invalid
        """
        self._ensure_cache_directory(cache_path, cache_file_mode)

        # Process-wide values override same-named profile directives
        process_wide = {
            'Core.Encoding': encoding,
            'Cache.SerializerPath': str(cache_path) if cache_path else None,
            'Cache.SerializerPermissions': cache_file_mode,
        }

        profiles = dict(profiles or {})
        profiles.setdefault(self.DEFAULT_PROFILE, {})

        configs = {}
        for name, overrides in profiles.items():
            configs[name] = self._build_profile(name, overrides or {}, process_wide, finalize)

        self.encoding = encoding
        self.cache_path = process_wide['Cache.SerializerPath']
        self.cache_file_mode = cache_file_mode
        self.finalized = finalize
        self._configs = configs
        self._purifier = Purifier(configs[self.DEFAULT_PROFILE])
        self._warned_profiles = OrderedDict()

        logger.info(f"SanitizationGateway initialized with profiles {sorted(configs)} "
                    f"(encoding: {encoding}, cache: {self.cache_path or 'disabled'}, finalized: {finalize})")
        return self

    def _ensure_cache_directory(self, cache_path, mode: int):
        if not cache_path:
            return

        path = Path(cache_path)
        if path.is_dir():
            return
        if path.exists():
            raise StorageError(path, 'exists and is not a directory')

        try:
            path.mkdir(mode=mode, parents=True)
            # mkdir honours the umask
            os.chmod(path, mode)
        except OSError as e:
            raise StorageError(path, e.strerror or str(e)) from e

        logger.info(f"Created purifier cache directory {path} with mode {oct(mode)}")

    def _build_profile(self, name: str, overrides: Mapping[str, Any],
                       process_wide: Mapping[str, Any], finalize: bool) -> EngineConfig:
        directives = {key: value for key, value in overrides.items() if key not in self.DEFINITION_KEYS}

        shadowed = sorted(key for key in process_wide if key in directives)
        if shadowed:
            logger.debug(f"Profile '{name}' directives {shadowed} are replaced by process-wide settings")
        directives.update(process_wide)

        config = EngineConfig.create(directives)
        if not finalize:
            config.auto_finalize = False

        definition = overrides.get('custom_definition')
        if definition:
            self._add_custom_definition(config, definition)

        attributes = [AttributeDefinition.from_record(record) for record in overrides.get('custom_attributes') or ()]
        elements = [ElementDefinition.from_record(record) for record in overrides.get('custom_elements') or ()]
        if attributes or elements:
            raw = config.maybe_get_raw_html_definition()
            if raw is not None:
                # Elements may rely on attributes being registered already
                for attribute in attributes:
                    raw.add_attribute(attribute)
                for element in elements:
                    raw.add_element(element)

        if finalize:
            config.finalize()

        return config

    def _add_custom_definition(self, config: EngineConfig, record: Mapping[str, Any]):
        """
        Register a custom definition record: ``id``, ``rev``, ``debug``,
        ``attributes`` and ``elements``
        """
        attributes = [AttributeDefinition.from_record(item) for item in record.get('attributes') or ()]
        elements = [ElementDefinition.from_record(item) for item in record.get('elements') or ()]

        config.set('HTML.DefinitionID', record.get('id'))
        config.set('HTML.DefinitionRev', record.get('rev', 1))

        # Debug mode compiles on every start instead of caching
        if record.get('debug', True):
            config.set('Cache.DefinitionImpl', None)

        raw = config.maybe_get_raw_html_definition()
        if raw is None:
            logger.debug(f"Custom definition '{record.get('id')}' rev {record.get('rev', 1)} served from cache")
            return

        for attribute in attributes:
            raw.add_attribute(attribute)
        for element in elements:
            raw.add_element(element)

    def _require_initialized(self):
        if self._purifier is None:
            raise PurifierError("SanitizationGateway used before initialize()")

    @property
    def profiles(self) -> List[str]:
        return list(self._configs)

    def get_config(self, profile: Optional[str] = None) -> EngineConfig:
        """Engine config for a profile; unknown names fall back to default"""
        self._require_initialized()

        if profile is None:
            return self._configs[self.DEFAULT_PROFILE]

        config = self._configs.get(profile)
        if config is None:
            self._warn_unknown_profile(profile)
            config = self._configs[self.DEFAULT_PROFILE]
        return config

    def _warn_unknown_profile(self, profile: str):
        with self._warned_lock:
            if profile in self._warned_profiles:
                self._warned_profiles.move_to_end(profile)
                return
            self._warned_profiles[profile] = None
            if len(self._warned_profiles) > self.MAX_WARNED_PROFILES:
                self._warned_profiles.popitem(last=False)
        logger.warning(f"Unknown purifier profile '{profile}', falling back to '{self.DEFAULT_PROFILE}'")

    def get_instance(self) -> Purifier:
        """Underlying engine instance"""
        self._require_initialized()
        return self._purifier

    def cache_stats(self) -> Optional[Dict[str, Any]]:
        """Definition cache usage, None when caching is disabled"""
        self._require_initialized()
        if not self.cache_path:
            return None
        return DefinitionCache(self.cache_path, self.cache_file_mode).stats()

    def clean(self, dirty, profile: Optional[str] = None):
        """
        Sanitize HTML with a profile

        Args:
            dirty: A string (or bytes), or a list/tuple/dict of them
            profile: Profile name, default profile when omitted or unknown

        Returns:
            Cleaned value of the same shape as ``dirty``

        Raises:
            UnsupportedInputError: nested containers or non-text values
        """
        config = self.get_config(profile)

        if isinstance(dirty, (str, bytes, bytearray)):
            return self._purifier.purify(dirty, config)

        if isinstance(dirty, Mapping):
            return {key: self._purifier.purify(self._check_item(value), config) for key, value in dirty.items()}

        if isinstance(dirty, (list, tuple)):
            for item in dirty:
                self._check_item(item)
            cleaned = self._purifier.purify_array(dirty, config)
            return tuple(cleaned) if isinstance(dirty, tuple) else cleaned

        raise UnsupportedInputError(dirty)

    @staticmethod
    def _check_item(item):
        if not isinstance(item, (str, bytes, bytearray)):
            raise UnsupportedInputError(item)
        return item

    def add_element(self, profile: str, definition) -> bool:
        """
        Register a custom element on an unlocked profile

        Returns False when the profile's definition is served from the
        definition cache (bump its revision to pick the element up).
        """
        element = ElementDefinition.from_record(definition)
        raw = self._raw_definition_for(profile, f"add element <{element.name}>")
        if raw is None:
            return False
        raw.add_element(element)
        logger.info(f"Registered element <{element.name}> on profile '{profile}'")
        return True

    def add_attribute(self, profile: str, definition) -> bool:
        """Register a custom attribute on an unlocked profile"""
        attribute = AttributeDefinition.from_record(definition)
        raw = self._raw_definition_for(profile, f"add attribute {attribute.element}.{attribute.name}")
        if raw is None:
            return False
        raw.add_attribute(attribute)
        logger.info(f"Registered attribute {attribute.element}.{attribute.name} on profile '{profile}'")
        return True

    def _raw_definition_for(self, profile: str, action: str):
        self._require_initialized()

        config = self._configs.get(profile)
        if config is None:
            raise ValueError(f"Unknown purifier profile: {profile!r}")
        if config.is_finalized:
            raise ConfigLockedError(action)

        raw = config.maybe_get_raw_html_definition()
        if raw is None:
            logger.warning(f"Cannot {action} on profile '{profile}': definition is cached, "
                           f"bump HTML.DefinitionRev to change it")
        return raw
