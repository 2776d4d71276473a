# config/purifier.py
"""
Purifier configuration defaults and the read-only repository the gateway
reads them through
"""

import os
import copy
import tempfile
from typing import Any, Dict, Iterator, Mapping, Optional


class PurifierConfig:
    """Purifier configuration settings"""

    # Process-wide engine settings, these win over profile directives
    ENCODING = 'UTF-8'
    CACHE_PATH = os.environ.get('PURIFIER_CACHE_PATH') or os.path.join(tempfile.gettempdir(), 'purifier')
    CACHE_FILE_MODE = 0o755

    # Lock engine configuration once the gateway is initialized
    FINALIZE = True

    SETTINGS = {
        'default': {
            'HTML.Allowed': 'div,b,strong,i,em,u,a[href|title],ul,ol,li,p[style],br,span[style],'
                            'img[width|height|alt|src]',
            'CSS.AllowedProperties': 'font,font-size,font-weight,font-style,font-family,'
                                     'text-decoration,padding-left,color,background-color,text-align',
            'AutoFormat.RemoveEmpty': True,
        },
        'plain': {
            'HTML.AllowedElements': '',
        },
        'rich': {
            'AutoFormat.Linkify': True,
            'Attr.AllowedFrameTargets': '_blank',
        },
        'html5': {
            'custom_definition': {
                'id': 'html5-definitions',
                'rev': 1,
                'debug': False,
                'elements': [
                    ['section', 'Block', 'Flow', 'Common'],
                    ['nav', 'Block', 'Flow', 'Common'],
                    ['article', 'Block', 'Flow', 'Common'],
                    ['aside', 'Block', 'Flow', 'Common'],
                    ['header', 'Block', 'Flow', 'Common'],
                    ['footer', 'Block', 'Flow', 'Common'],
                    ['address', 'Block', 'Flow', 'Common'],
                    ['hgroup', 'Block', 'Required: h1 | h2 | h3 | h4 | h5 | h6', 'Common'],
                    ['figure', 'Block', 'Optional: figcaption | div | img | p', 'Common'],
                    ['figcaption', 'Inline', 'Flow', 'Common'],
                    ['mark', 'Inline', 'Inline', 'Common'],
                    ['time', 'Inline', 'Inline', 'Common', {'datetime': 'Text'}],
                    ['source', 'Block', 'Empty', 'Common', {'src*': 'URI', 'type': 'Text'}],
                    ['video', 'Block', 'Optional: source', 'Common', {
                        'src': 'URI',
                        'type': 'Text',
                        'width': 'Length',
                        'height': 'Length',
                        'poster': 'URI',
                        'preload': 'Enum#auto,metadata,none',
                        'controls': 'Bool',
                    }],
                ],
                'attributes': [
                    ['table', 'height', 'Text'],
                    ['td', 'border', 'Text'],
                    ['th', 'border', 'Text'],
                    ['tr', 'width', 'Text'],
                    ['tr', 'height', 'Text'],
                    ['tr', 'border', 'Text'],
                ],
            },
        },
        'custom_attributes': [
            ['a', 'target', 'Enum#_blank,_self,_target,_top'],
        ],
        'custom_elements': [
            ['u', 'Inline', 'Inline', 'Common'],
        ],
    }


class ConfigRepository(Mapping):
    """
    Read-only key/value repository with dotted lookups,
    e.g. ``repository.get('settings.default')``
    """

    def __init__(self, items: Optional[Mapping[str, Any]] = None):
        self._items: Dict[str, Any] = copy.deepcopy(dict(items or {}))

    @classmethod
    def from_object(cls, obj) -> 'ConfigRepository':
        """Load UPPER_CASE attributes of a config class, keys lowercased"""
        return cls({key.lower(): getattr(obj, key) for key in dir(obj) if key.isupper()})

    @classmethod
    def from_mapping(cls, mapping: Optional[Mapping[str, Any]] = None, **kwargs) -> 'ConfigRepository':
        items = dict(mapping or {})
        items.update(kwargs)
        return cls(items)

    @classmethod
    def from_flask_config(cls, config, namespace: str = 'PURIFIER_', defaults=PurifierConfig) -> 'ConfigRepository':
        """
        Build from a Flask config: ``PURIFIER_CACHE_PATH`` -> ``cache_path``
        Keys missing from the namespace come from ``defaults``
        """
        items = cls.from_object(defaults)._items if defaults is not None else {}
        items.update(config.get_namespace(namespace))
        return cls(items)

    def get(self, key: str, default: Any = None) -> Any:
        if key in self._items:
            return copy.deepcopy(self._items[key])

        value: Any = self._items
        for part in key.split('.'):
            if not isinstance(value, Mapping) or part not in value:
                return default
            value = value[part]
        return copy.deepcopy(value)

    def has(self, key: str) -> bool:
        marker = object()
        return self.get(key, marker) is not marker

    def __getitem__(self, key: str) -> Any:
        marker = object()
        value = self.get(key, marker)
        if value is marker:
            raise KeyError(key)
        return value

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self):
        return f"ConfigRepository({sorted(self._items)})"


class AppConfig:
    """Flask application settings, purifier keys use the PURIFIER_ prefix"""

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FORMAT = '%(asctime)s %(name)-20s %(levelname)-8s %(message)s'
    PURIFIER_FINALIZE = True


class DevelopmentConfig(AppConfig):
    """Development settings: definitions stay mutable"""

    LOG_LEVEL = 'DEBUG'
    PURIFIER_FINALIZE = False


class TestingConfig(AppConfig):
    """Testing settings: no on-disk definition cache"""

    TESTING = True
    PURIFIER_CACHE_PATH = None
