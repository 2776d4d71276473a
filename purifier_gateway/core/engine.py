# core/engine.py
"""
Sanitization engine adapter
Wraps bleach behind a configuration-object protocol: create a default
config, load directives from a mapping, register custom definitions on the
raw HTML definition, finalize, then purify input against it
"""

import re
import codecs
import logging
import threading
from functools import partial
from typing import Dict, List, Optional, Set, Any, Mapping, Iterable, Union

import bleach
from bleach.css_sanitizer import CSSSanitizer
from bleach.linkifier import LinkifyFilter
from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from purifier_gateway.core.cache import DefinitionCache
from purifier_gateway.core.definitions import CompiledDefinition, HTMLDefinition, compile_definition
from purifier_gateway.core.errors import ConfigLockedError

# Configure logging
logger = logging.getLogger(__name__)


# Elements allowed when no element directive narrows the set
DEFAULT_ELEMENTS = [
    'p', 'br', 'strong', 'em', 'b', 'i', 'u', 's', 'sub', 'sup', 'small',
    'h1', 'h2', 'h3', 'h4', 'h5', 'h6',
    'ul', 'ol', 'li', 'dl', 'dt', 'dd',
    'a', 'img', 'figure', 'figcaption',
    'table', 'thead', 'tbody', 'tfoot', 'tr', 'td', 'th', 'caption', 'col', 'colgroup',
    'div', 'span', 'hr', 'blockquote', 'pre', 'code', 'del', 'ins', 'abbr', 'kbd', 'q'
]

# Per-element attributes and their value specs
DEFAULT_ELEMENT_ATTRIBUTES = {
    'a': {'href': 'URI', 'title': 'Text'},
    'img': {'src': 'URI', 'alt': 'Text', 'width': 'Length', 'height': 'Length', 'title': 'Text'},
    'table': {'border': 'Pixels', 'cellpadding': 'Length', 'cellspacing': 'Length', 'width': 'Length',
              'summary': 'Text'},
    'td': {'colspan': 'Number', 'rowspan': 'Number', 'width': 'Length', 'height': 'Length',
           'align': 'Enum#left,center,right,justify', 'valign': 'Enum#top,middle,bottom,baseline'},
    'th': {'colspan': 'Number', 'rowspan': 'Number', 'width': 'Length', 'height': 'Length',
           'align': 'Enum#left,center,right,justify', 'valign': 'Enum#top,middle,bottom,baseline',
           'abbr': 'Text', 'scope': 'Enum#row,col,rowgroup,colgroup'},
    'tr': {'align': 'Enum#left,center,right,justify', 'valign': 'Enum#top,middle,bottom,baseline'},
    'col': {'span': 'Number', 'width': 'Length'},
    'colgroup': {'span': 'Number', 'width': 'Length'},
    'blockquote': {'cite': 'URI'},
    'q': {'cite': 'URI'},
    'del': {'cite': 'URI'},
    'ins': {'cite': 'URI'},
    'ol': {'start': 'Number'},
    'abbr': {'title': 'Text'},
}

DEFAULT_GLOBAL_ATTRIBUTES = {
    'class': 'Class',
    'style': 'Text',
    'title': 'Text',
    'dir': 'Enum#ltr,rtl',
    'lang': 'Text',
}

# Value spec used for an attribute named in HTML.Allowed without a table entry
ATTRIBUTE_SPEC_BY_NAME = {
    'href': 'URI', 'src': 'URI', 'cite': 'URI', 'longdesc': 'URI',
    'width': 'Length', 'height': 'Length',
    'colspan': 'Number', 'rowspan': 'Number', 'span': 'Number', 'start': 'Number',
    'border': 'Pixels', 'id': 'ID', 'class': 'Class', 'color': 'Color',
}

DEFAULT_CSS_PROPERTIES = [
    'color', 'background-color',
    'font', 'font-family', 'font-size', 'font-weight', 'font-style',
    'text-align', 'text-decoration', 'text-transform', 'text-indent',
    'margin', 'margin-top', 'margin-bottom', 'margin-left', 'margin-right',
    'padding', 'padding-top', 'padding-bottom', 'padding-left', 'padding-right',
    'border', 'border-top', 'border-bottom', 'border-left', 'border-right',
    'border-color', 'border-style', 'border-width', 'border-collapse',
    'width', 'height', 'max-width', 'min-width',
    'float', 'clear', 'line-height', 'vertical-align', 'list-style-type'
]

# Never emptied by AutoFormat.RemoveEmpty
VOID_ELEMENTS = frozenset(['br', 'hr', 'img', 'col', 'area', 'input', 'wbr', 'embed', 'source', 'track'])
REMOVE_EMPTY_EXCLUSIONS = frozenset(['td', 'th', 'colgroup', 'iframe'])

_HTML_ALLOWED_ITEM = re.compile(r'^\s*([\w:-]+|\*)\s*(?:\[([^\]]*)\])?\s*$')


def _as_set(value) -> Optional[frozenset]:
    if value is None:
        return None
    if isinstance(value, str):
        return frozenset(item.strip() for item in value.split(',') if item.strip())
    if isinstance(value, Mapping):
        return frozenset(key for key, enabled in value.items() if enabled)
    return frozenset(value)


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def _as_encoding(value) -> str:
    # Unknown codecs raise LookupError at configuration time
    return codecs.lookup(value).name


def _as_optional_str(value) -> Optional[str]:
    return str(value) if value not in (None, '') else None


class EngineConfig:
    """
    Directive store for the engine, one instance per profile

    Directive names follow the ``Namespace.Directive`` convention. Unknown
    directives are logged and ignored. Once finalized, neither directives
    nor the raw HTML definition can change.
    """

    DEFAULTS = {
        'Core.Encoding': 'utf-8',
        'Core.HiddenElements': frozenset(['script', 'style']),
        'Cache.SerializerPath': None,
        'Cache.SerializerPermissions': 0o755,
        'Cache.DefinitionImpl': 'Serializer',
        'HTML.DefinitionID': None,
        'HTML.DefinitionRev': 1,
        'HTML.Allowed': None,
        'HTML.AllowedElements': None,
        'HTML.AllowedAttributes': None,
        'HTML.ForbiddenElements': frozenset(),
        'CSS.AllowedProperties': None,
        'URI.AllowedSchemes': frozenset(['http', 'https', 'mailto', 'ftp', 'nntp', 'news', 'tel']),
        'Attr.AllowedFrameTargets': frozenset(),
        'AutoFormat.Linkify': False,
        'AutoFormat.RemoveEmpty': False,
    }

    NORMALIZERS = {
        'Core.Encoding': _as_encoding,
        'Core.HiddenElements': _as_set,
        'Cache.SerializerPath': _as_optional_str,
        'Cache.SerializerPermissions': int,
        'Cache.DefinitionImpl': _as_optional_str,
        'HTML.DefinitionID': _as_optional_str,
        'HTML.DefinitionRev': int,
        'HTML.Allowed': _as_optional_str,
        'HTML.AllowedElements': _as_set,
        'HTML.AllowedAttributes': _as_set,
        'HTML.ForbiddenElements': lambda value: _as_set(value) or frozenset(),
        'CSS.AllowedProperties': _as_set,
        'URI.AllowedSchemes': lambda value: _as_set(value) or frozenset(),
        'Attr.AllowedFrameTargets': lambda value: _as_set(value) or frozenset(),
        'AutoFormat.Linkify': _as_bool,
        'AutoFormat.RemoveEmpty': _as_bool,
    }

    # Directives where None means "unset"; anything else falls back to its default
    NULLABLE = frozenset(
        [key for key, default in DEFAULTS.items() if default is None] + ['Cache.DefinitionImpl']
    )

    def __init__(self, parent: Optional['EngineConfig'] = None):
        self.parent = parent
        self.directives: Dict[str, Any] = {}
        self.auto_finalize = True
        self._finalized = False
        self._raw_definition: Optional[HTMLDefinition] = None
        self._definition: Optional[CompiledDefinition] = None
        self._cleaner_options: Optional[Dict[str, Any]] = None
        # bleach.Cleaner keeps parser state, so each thread gets its own
        self._local = threading.local()

    @classmethod
    def create_default(cls) -> 'EngineConfig':
        return cls()

    @classmethod
    def create(cls, directives: Optional[Mapping[str, Any]] = None) -> 'EngineConfig':
        config = cls.create_default()
        if directives:
            config.load_mapping(directives)
        return config

    @classmethod
    def inherit(cls, parent: 'EngineConfig') -> 'EngineConfig':
        """New config reading through to ``parent`` for unset directives"""
        return cls(parent=parent)

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    def get(self, key: str) -> Any:
        if key in self.directives:
            return self.directives[key]
        if self.parent is not None:
            return self.parent.get(key)
        return self.DEFAULTS[key]

    def set(self, key: str, value: Any):
        if self._finalized:
            raise ConfigLockedError(f"set directive {key}")

        normalizer = self.NORMALIZERS.get(key)
        if normalizer is None:
            logger.warning(f"Ignoring unknown engine directive: {key}")
            return

        if value is None and key not in self.NULLABLE:
            value = self.DEFAULTS[key]
        self.directives[key] = normalizer(value) if value is not None else None
        self._invalidate()

    def load_mapping(self, directives: Mapping[str, Any]):
        for key, value in directives.items():
            self.set(key, value)

    def effective_directives(self) -> Dict[str, Any]:
        return {key: self.get(key) for key in self.DEFAULTS}

    def finalize(self):
        """Lock directives and the raw definition; compile eagerly"""
        if self._finalized:
            return
        self.get_html_definition(finalize=False)
        if self._raw_definition is not None:
            self._raw_definition.lock()
        self._finalized = True
        self._cleaner_options = self._build_cleaner_options()
        logger.debug(f"Engine config finalized (definition id: {self.get('HTML.DefinitionID')})")

    def _invalidate(self):
        self._definition = None
        self._cleaner_options = None

    @property
    def definition_cache(self) -> Optional[DefinitionCache]:
        path = self.get('Cache.SerializerPath')
        if not path or self.get('Cache.DefinitionImpl') != 'Serializer':
            return None
        return DefinitionCache(path, self.get('Cache.SerializerPermissions'))

    def _cache_key(self, cache: DefinitionCache) -> str:
        shaping = {key: value for key, value in self.effective_directives().items()
                   if key.startswith('HTML.') or key == 'Attr.AllowedFrameTargets'}
        return cache.key(self.get('HTML.DefinitionID'), self.get('HTML.DefinitionRev'), shaping)

    def maybe_get_raw_html_definition(self) -> Optional[HTMLDefinition]:
        """
        Raw definition to register custom elements/attributes on, or None
        when a cached definition for this ID and revision already exists
        """
        if self._finalized:
            raise ConfigLockedError("retrieve raw HTML definition")

        if self._raw_definition is None:
            cache = self.definition_cache
            if cache is not None and self.get('HTML.DefinitionID'):
                cached = cache.get(self._cache_key(cache))
                if cached is not None:
                    self._definition = cached
                    return None
            self._raw_definition = HTMLDefinition()

        # Caller is about to mutate it
        self._invalidate()
        return self._raw_definition

    def get_html_definition(self, finalize: Optional[bool] = None) -> CompiledDefinition:
        if self._definition is None:
            self._definition = self._load_definition()

        if finalize is None:
            finalize = self.auto_finalize and not self._finalized
        if finalize:
            self.finalize()

        return self._definition

    def _load_definition(self) -> CompiledDefinition:
        cache = self.definition_cache
        # Custom additions are only cacheable under their own definition ID
        if self._raw_definition is not None and not self._raw_definition.is_empty \
                and not self.get('HTML.DefinitionID'):
            cache = None
        key = self._cache_key(cache) if cache is not None else None

        if cache is not None:
            cached = cache.get(key)
            if cached is not None:
                return cached

        elements, global_attributes = self._base_tables()
        definition = compile_definition(elements, global_attributes, self._raw_definition)

        if cache is not None:
            cache.set(key, definition)

        return definition

    def _base_tables(self):
        """Element/attribute tables derived from HTML.* directives"""
        allowed = self.get('HTML.Allowed')
        allowed_elements = self.get('HTML.AllowedElements')

        if allowed:
            elements, global_attributes = self._parse_html_allowed(allowed)
        else:
            names = allowed_elements if allowed_elements is not None else DEFAULT_ELEMENTS
            elements = {name: dict(DEFAULT_ELEMENT_ATTRIBUTES.get(name, {})) for name in names}
            global_attributes = dict(DEFAULT_GLOBAL_ATTRIBUTES)

        targets = self.get('Attr.AllowedFrameTargets')
        if targets and 'a' in elements:
            elements['a']['target'] = 'Enum#s:' + ','.join(sorted(targets))

        allowed_attributes = self.get('HTML.AllowedAttributes')
        if allowed_attributes is not None:
            for name, attrs in elements.items():
                elements[name] = {
                    attr: spec for attr, spec in attrs.items()
                    if f"{name}.{attr}" in allowed_attributes or f"*.{attr}" in allowed_attributes
                }
            global_attributes = {
                attr: spec for attr, spec in global_attributes.items() if f"*.{attr}" in allowed_attributes
            }

        for name in self.get('HTML.ForbiddenElements'):
            elements.pop(name, None)

        return elements, global_attributes

    @staticmethod
    def _parse_html_allowed(allowed: str):
        """Parse ``div,a[href|title],*[class]`` into element/global tables"""
        elements: Dict[str, Dict[str, str]] = {}
        global_attributes: Dict[str, str] = {}

        for item in re.split(r',(?![^\[]*\])', allowed):
            if not item.strip():
                continue
            match = _HTML_ALLOWED_ITEM.match(item)
            if not match:
                logger.warning(f"Ignoring malformed HTML.Allowed entry: {item.strip()!r}")
                continue

            name, attr_list = match.group(1), match.group(2) or ''
            attrs = [attr.strip() for attr in attr_list.split('|') if attr.strip()]

            if name == '*':
                for attr in attrs:
                    global_attributes[attr] = DEFAULT_GLOBAL_ATTRIBUTES.get(attr) or ATTRIBUTE_SPEC_BY_NAME.get(attr, 'Text')
                continue

            table = elements.setdefault(name, {})
            for attr in attrs:
                table[attr] = (DEFAULT_ELEMENT_ATTRIBUTES.get(name, {}).get(attr)
                               or DEFAULT_GLOBAL_ATTRIBUTES.get(attr)
                               or ATTRIBUTE_SPEC_BY_NAME.get(attr, 'Text'))

        return elements, global_attributes

    def get_cleaner(self) -> bleach.Cleaner:
        """bleach Cleaner for the calling thread, built from the compiled definition"""
        options = self._cleaner_options
        if options is None:
            options = self._cleaner_options = self._build_cleaner_options()

        local = self._local
        if getattr(local, 'options', None) is not options:
            local.cleaner = bleach.Cleaner(**options)
            local.options = options
        return local.cleaner

    def _build_cleaner_options(self) -> Dict[str, Any]:
        """Immutable Cleaner arguments, shared by every thread"""
        definition = self.get_html_definition()
        schemes = self.get('URI.AllowedSchemes')
        properties = self.get('CSS.AllowedProperties')

        css_sanitizer = CSSSanitizer(
            allowed_css_properties=frozenset(properties if properties is not None else DEFAULT_CSS_PROPERTIES),
            allowed_svg_properties=frozenset()
        )

        filters = []
        if self.get('AutoFormat.Linkify'):
            if definition.allows_attribute('a', 'href'):
                filters.append(partial(LinkifyFilter, callbacks=[], skip_tags={'pre', 'code'}, parse_email=False))
            else:
                logger.warning("AutoFormat.Linkify requires a[href] to be allowed; linkify disabled")

        return {
            'tags': definition.allowed_tags,
            'attributes': definition.attribute_filter(schemes),
            'protocols': schemes,
            'strip': True,  # Strip disallowed tags instead of escaping
            'strip_comments': True,
            'filters': tuple(filters),
            'css_sanitizer': css_sanitizer,
        }


class Purifier:
    """
    Engine entry point: ``purify(input, config) -> cleaned``
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig.create_default()

    def purify(self, html: Union[str, bytes], config: Union[EngineConfig, Mapping[str, Any], None] = None):
        """
        Sanitize one HTML fragment

        Args:
            html: Text, or bytes in the configured encoding
            config: Engine config, a directive mapping (applied on top of
                the engine defaults) or None for the instance config

        Returns:
            Cleaned fragment of the same type as the input
        """
        config = self._resolve_config(config)
        encoding = config.get('Core.Encoding')

        is_bytes = isinstance(html, (bytes, bytearray))
        # Malformed sequences become U+FFFD
        text = bytes(html).decode(encoding, errors='replace') if is_bytes else html

        definition = config.get_html_definition()
        hidden = (config.get('Core.HiddenElements') or frozenset()) - definition.allowed_tags
        text = strip_hidden_elements(text, hidden)

        cleaned = config.get_cleaner().clean(text)
        cleaned = enforce_tree_constraints(cleaned, definition, config.get('AutoFormat.RemoveEmpty'))

        if is_bytes:
            return cleaned.encode(encoding, errors='xmlcharrefreplace')
        return cleaned

    def purify_array(self, items: Iterable, config: Union[EngineConfig, Mapping[str, Any], None] = None) -> List:
        config = self._resolve_config(config)
        return [self.purify(item, config) for item in items]

    def _resolve_config(self, config) -> EngineConfig:
        if config is None:
            return self.config
        if isinstance(config, EngineConfig):
            return config
        return EngineConfig.create(config)


def strip_hidden_elements(html: str, hidden: Iterable[str]) -> str:
    """Remove hidden elements together with their content"""
    hidden = sorted(hidden)
    if not hidden or '<' not in html:
        return html

    pattern = re.compile(r'<\s*(' + '|'.join(re.escape(name) for name in hidden) + r')\b', re.IGNORECASE)
    if not pattern.search(html):
        return html

    soup = BeautifulSoup(html, 'html.parser')
    for tag in soup.find_all(hidden):
        tag.decompose()
    return str(soup)


def enforce_tree_constraints(html: str, definition: CompiledDefinition, remove_empty: bool = False) -> str:
    """
    Apply the constraints bleach cannot express: required attributes,
    allowed children and optional removal of empty elements
    """
    if '<' not in html or not (remove_empty or definition.has_tree_constraints):
        return html

    soup = BeautifulSoup(html, 'html.parser')

    for name, rule in definition.elements.items():
        required = rule.required_attributes
        if not required:
            continue
        for tag in soup.find_all(name):
            missing = [attr for attr in required if attr not in tag.attrs]
            if missing:
                logger.debug(f"Unwrapping <{name}> missing required attributes: {missing}")
                tag.unwrap()

    restricted = {
        name: rule.child_definition for name, rule in definition.elements.items()
        if rule.child_definition and not rule.child_definition.is_unrestricted
    }
    if restricted:
        # Innermost first so parents see their final children
        for tag in reversed(soup.find_all(list(restricted))):
            if tag.decomposed:
                continue
            _apply_child_definition(tag, restricted[tag.name], definition.block_elements)

    if remove_empty:
        empty_content = {name for name, child_def in restricted.items() if child_def.kind == 'Empty'}
        for tag in reversed(soup.find_all(True)):
            if tag.decomposed or tag.name in VOID_ELEMENTS or tag.name in REMOVE_EMPTY_EXCLUSIONS:
                continue
            if tag.name in empty_content or tag.get('id') or tag.get('name'):
                continue
            if all(isinstance(child, NavigableString) and not child.strip() for child in tag.contents):
                tag.decompose()

    return str(soup)


def _apply_child_definition(tag: Tag, child_def, block_elements):
    if child_def.kind == 'Empty':
        tag.clear()
        return

    if child_def.kind == 'Inline':
        while True:
            blocks = [child for child in tag.children if isinstance(child, Tag) and child.name in block_elements]
            if not blocks:
                return
            for block in blocks:
                block.unwrap()

    # Optional / Required element lists
    for child in list(tag.children):
        if isinstance(child, Tag):
            if child.name not in child_def.names:
                child.decompose()
        elif isinstance(child, Comment):
            child.extract()
        elif not child_def.allow_text and child.strip():
            child.extract()

    if child_def.kind == 'Required':
        has_content = any(
            isinstance(child, Tag) or (child_def.allow_text and child.strip())
            for child in tag.children
        )
        if not has_content:
            tag.decompose()
