# core/cache.py
"""
On-disk cache of compiled HTML definitions
Files live under <serializer path>/HTML/<id>,<directive hash>,<rev>.json
"""

import os
import json
import hashlib
import logging
from pathlib import Path
from typing import Dict, Optional, Any, Mapping

from purifier_gateway.core.definitions import CompiledDefinition

# Configure logging
logger = logging.getLogger(__name__)


class DefinitionCache:
    """
    Serializer-style definition cache

    The key covers the definition ID, its revision and a hash of the
    directives that shape the base definition. Custom element/attribute
    additions are NOT part of the key: changing them requires a new
    revision, otherwise the stale cached definition keeps being served.
    """

    TYPE = 'HTML'

    def __init__(self, path, permissions: int = 0o755):
        self.path = Path(path)
        self.permissions = permissions

    @property
    def directory(self) -> Path:
        return self.path / self.TYPE

    @staticmethod
    def directive_hash(directives: Mapping[str, Any]) -> str:
        payload = json.dumps(directives, sort_keys=True, default=_json_default)
        return hashlib.sha1(payload.encode('utf-8')).hexdigest()[:16]

    def key(self, definition_id: Optional[str], revision: int, directives: Mapping[str, Any]) -> str:
        return f"{definition_id or 'default'},{self.directive_hash(directives)},{revision}"

    def file_for(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[CompiledDefinition]:
        cache_file = self.file_for(key)
        if not cache_file.is_file():
            return None

        try:
            with open(cache_file, 'r', encoding='utf-8') as handle:
                data = json.load(handle)
            definition = CompiledDefinition.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable definition cache {cache_file}: {str(e)}")
            return None

        logger.debug(f"Definition cache hit: {cache_file.name}")
        return definition

    def set(self, key: str, definition: CompiledDefinition) -> bool:
        """Write a compiled definition; failures are logged, never raised"""
        cache_file = self.file_for(key)
        try:
            if not self.directory.is_dir():
                self.directory.mkdir(parents=True, exist_ok=True)
                os.chmod(self.directory, self.permissions)

            tmp_file = cache_file.with_suffix('.tmp')
            with open(tmp_file, 'w', encoding='utf-8') as handle:
                json.dump(definition.to_dict(), handle, sort_keys=True)
            # Files never carry execute bits
            os.chmod(tmp_file, self.permissions & ~0o111)
            os.replace(tmp_file, cache_file)
        except OSError as e:
            logger.warning(f"Definition cache write failed for {cache_file}: {str(e)}")
            return False

        logger.debug(f"Definition cached: {cache_file.name}")
        return True

    def stats(self) -> Dict[str, Any]:
        files = list(self.directory.glob('*.json')) if self.directory.is_dir() else []
        return {
            'path': str(self.directory),
            'entries': len(files),
            'size_bytes': sum(f.stat().st_size for f in files),
        }


def _json_default(value):
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)
