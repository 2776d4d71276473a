# core/definitions.py
"""
HTML definition records for the purifier gateway
Element and attribute definitions, value specs, allowed-children specs,
attribute collections and the raw/compiled HTML definition
"""

import re
import logging
from typing import Dict, List, Optional, Tuple, Set, Any, Mapping, Iterable
from dataclasses import dataclass, field
from urllib.parse import urlparse

from purifier_gateway.core.errors import ConfigLockedError, DefinitionError

# Configure logging
logger = logging.getLogger(__name__)


# Attribute collections that custom elements can pull in by name
ATTRIBUTE_COLLECTIONS = {
    'Core': {'class': 'Class', 'id': 'ID', 'style': 'Text', 'title': 'Text'},
    'I18N': {'lang': 'Text', 'xml:lang': 'Text', 'dir': 'Enum#ltr,rtl'},
}
ATTRIBUTE_COLLECTIONS['Common'] = {**ATTRIBUTE_COLLECTIONS['Core'], **ATTRIBUTE_COLLECTIONS['I18N']}

# Elements treated as block level when checking Inline content
BLOCK_ELEMENTS = frozenset([
    'address', 'article', 'aside', 'blockquote', 'center', 'dd', 'details',
    'div', 'dl', 'dt', 'figcaption', 'figure', 'footer', 'h1', 'h2', 'h3',
    'h4', 'h5', 'h6', 'header', 'hr', 'li', 'main', 'nav', 'ol', 'p', 'pre',
    'section', 'table', 'tbody', 'td', 'tfoot', 'th', 'thead', 'tr', 'ul'
])

REQUIRED_SUFFIX = '*'

_VALUE_PATTERNS = {
    'Number': re.compile(r'^\d+$'),
    'Length': re.compile(r'^\d+(\.\d+)?%?$'),
    'Pixels': re.compile(r'^\d+(px)?$', re.IGNORECASE),
    'Color': re.compile(r'^(#[0-9a-f]{3}|#[0-9a-f]{6}|[a-z]+)$', re.IGNORECASE),
    'ID': re.compile(r'^[A-Za-z][\w:.-]*$'),
    'Class': re.compile(r'^[\w\s-]*$'),
}

_FREE_TEXT_SPECS = ('Text', 'CDATA')

# Control characters and whitespace browsers ignore inside a scheme
_URI_JUNK = re.compile(r'[\x00-\x20\x7f]+')


class ValueSpec:
    """
    Parsed attribute value spec, e.g. ``Text``, ``URI``, ``Enum#_blank,_self``
    """

    def __init__(self, spec: str):
        if not isinstance(spec, str) or not spec.strip():
            raise DefinitionError(f"Attribute value spec must be a non-empty string, got {spec!r}")

        self.spec = spec.strip()
        kind, _, argument = self.spec.partition('#')
        self.kind = kind
        self.choices = None
        self.case_sensitive = False

        if kind == 'Enum':
            if argument.startswith('s:'):
                self.case_sensitive = True
                argument = argument[2:]
            choices = [choice.strip() for choice in argument.split(',') if choice.strip()]
            if not choices:
                raise DefinitionError(f"Enum spec without choices: {spec!r}")
            self.choices = frozenset(choices if self.case_sensitive else [c.lower() for c in choices])
        elif kind == 'Bool':
            self.choices = frozenset([argument.lower()]) if argument else None
        elif kind not in _VALUE_PATTERNS and kind not in _FREE_TEXT_SPECS and kind != 'URI':
            raise DefinitionError(f"Unknown attribute value spec: {spec!r}")

    def validate(self, value: str, schemes: Iterable[str] = ()) -> bool:
        if self.kind in _FREE_TEXT_SPECS:
            return True

        if self.kind == 'URI':
            return _is_allowed_uri(value, schemes)

        if self.kind == 'Enum':
            candidate = value.strip()
            return (candidate if self.case_sensitive else candidate.lower()) in self.choices

        if self.kind == 'Bool':
            # Presence alone enables the attribute
            return self.choices is None or value == '' or value.lower() in self.choices

        return bool(_VALUE_PATTERNS[self.kind].match(value.strip()))

    def __eq__(self, other):
        return isinstance(other, ValueSpec) and other.spec == self.spec

    def __hash__(self):
        return hash(self.spec)

    def __repr__(self):
        return f"ValueSpec({self.spec!r})"


def _is_allowed_uri(value: str, schemes: Iterable[str]) -> bool:
    candidate = _URI_JUNK.sub('', value)
    if not candidate:
        return True
    try:
        scheme = urlparse(candidate).scheme
    except ValueError:
        return False
    # Relative references carry no scheme
    return not scheme or scheme.lower() in {s.lower() for s in schemes}


class ChildDefinition:
    """
    Allowed-children spec of an element:
    ``Empty``, ``Flow``, ``Inline``, ``Optional: a | b``, ``Required: a | b``
    """

    KINDS = ('Empty', 'Flow', 'Inline', 'Optional', 'Required')

    def __init__(self, spec: str):
        if not isinstance(spec, str) or not spec.strip():
            raise DefinitionError(f"Allowed-children spec must be a non-empty string, got {spec!r}")

        self.spec = spec.strip()
        kind, sep, listing = self.spec.partition(':')
        self.kind = kind.strip()
        self.names = frozenset()
        self.allow_text = self.kind in ('Flow', 'Inline')

        if self.kind not in self.KINDS:
            raise DefinitionError(f"Unknown allowed-children spec: {spec!r}")

        if self.kind in ('Optional', 'Required'):
            names = [name.strip() for name in listing.split('|') if name.strip()]
            if not sep or not names:
                raise DefinitionError(f"{self.kind} spec needs a list of elements: {spec!r}")
            self.allow_text = '#PCDATA' in names
            self.names = frozenset(name for name in names if name != '#PCDATA')

    @property
    def is_unrestricted(self) -> bool:
        return self.kind == 'Flow'

    def __repr__(self):
        return f"ChildDefinition({self.spec!r})"


def _split_required(name: str) -> Tuple[str, bool]:
    """Decode the legacy trailing-marker encoding of a required attribute"""
    if name.endswith(REQUIRED_SUFFIX):
        return name[:-len(REQUIRED_SUFFIX)], True
    return name, False


@dataclass(frozen=True)
class ElementDefinition:
    """Custom element registered against a profile"""
    name: str
    content_set: str
    allowed_children: str
    attribute_collection: Optional[str] = 'Common'
    attribute_overrides: Mapping[str, str] = field(default_factory=dict)
    required_attributes: Tuple[str, ...] = ()

    def __post_init__(self):
        if not self.name or not isinstance(self.name, str):
            raise DefinitionError(f"Element name must be a non-empty string, got {self.name!r}")
        if self.attribute_collection and self.attribute_collection not in ATTRIBUTE_COLLECTIONS:
            raise DefinitionError(f"Unknown attribute collection: {self.attribute_collection!r}")

        ChildDefinition(self.allowed_children)
        for attr_name, spec in self.attribute_overrides.items():
            if attr_name.endswith(REQUIRED_SUFFIX):
                raise DefinitionError(
                    f"Attribute {attr_name!r} on <{self.name}> uses a required marker; "
                    f"list it in required_attributes instead"
                )
            ValueSpec(spec)

        for attr_name in self.required_attributes:
            if attr_name not in self.attribute_overrides:
                raise DefinitionError(f"Required attribute {attr_name!r} on <{self.name}> has no value spec")

    @classmethod
    def from_record(cls, record: Any) -> 'ElementDefinition':
        """
        Build from a definition, a mapping or a positional record
        ``[name, content_set, allowed_children, collection, overrides?]``
        """
        if isinstance(record, cls):
            return record

        if isinstance(record, Mapping):
            overrides = dict(record.get('attribute_overrides') or {})
            required = list(record.get('required_attributes') or ())
            name = record.get('name')
            content_set = record.get('content_set')
            allowed_children = record.get('allowed_children')
            collection = record.get('attribute_collection', 'Common')
        elif isinstance(record, (list, tuple)) and len(record) >= 4:
            name, content_set, allowed_children, collection = record[:4]
            overrides = dict(record[4]) if len(record) > 4 and record[4] else {}
            required = []
        else:
            raise DefinitionError(f"Invalid element definition record: {record!r}")

        decoded = {}
        for attr_name, spec in overrides.items():
            attr_name, is_required = _split_required(attr_name)
            decoded[attr_name] = spec
            if is_required and attr_name not in required:
                required.append(attr_name)

        return cls(
            name=name,
            content_set=content_set,
            allowed_children=allowed_children,
            attribute_collection=collection or None,
            attribute_overrides=decoded,
            required_attributes=tuple(required)
        )


@dataclass(frozen=True)
class AttributeDefinition:
    """Custom attribute registered on an element (``*`` for every element)"""
    element: str
    name: str
    valid_values: str
    required: bool = False

    def __post_init__(self):
        if not self.element or not self.name:
            raise DefinitionError(f"Attribute definition needs an element and a name: {self!r}")
        if self.name.endswith(REQUIRED_SUFFIX):
            raise DefinitionError(f"Attribute name {self.name!r} uses a required marker; set required=True")
        ValueSpec(self.valid_values)

    @classmethod
    def from_record(cls, record: Any) -> 'AttributeDefinition':
        """
        Build from a definition, a mapping or a positional record
        ``[element, name, valid_values, required?]``
        """
        if isinstance(record, cls):
            return record

        if isinstance(record, Mapping):
            name, marked = _split_required(record.get('name') or '')
            return cls(
                element=record.get('element'),
                name=name,
                valid_values=record.get('valid_values'),
                required=bool(record.get('required')) or marked
            )

        if isinstance(record, (list, tuple)) and len(record) >= 3:
            name, marked = _split_required(record[1])
            required = bool(record[3]) if len(record) > 3 else False
            return cls(element=record[0], name=name, valid_values=record[2], required=required or marked)

        raise DefinitionError(f"Invalid attribute definition record: {record!r}")


@dataclass
class AttributeRule:
    """Compiled attribute: value spec plus required flag"""
    spec: ValueSpec
    required: bool = False


@dataclass
class ElementRule:
    """Compiled element rule"""
    name: str
    attributes: Dict[str, AttributeRule] = field(default_factory=dict)
    content_set: Optional[str] = None
    child_definition: Optional[ChildDefinition] = None

    @property
    def required_attributes(self) -> Set[str]:
        return {name for name, rule in self.attributes.items() if rule.required}


class HTMLDefinition:
    """
    Raw HTML definition: ordered custom attribute and element additions
    Mutable until locked; the compiled form is rebuilt from it
    """

    def __init__(self):
        self.elements: List[ElementDefinition] = []
        self.attributes: List[AttributeDefinition] = []
        self._locked = False

    @property
    def locked(self) -> bool:
        return self._locked

    @property
    def is_empty(self) -> bool:
        return not self.elements and not self.attributes

    def lock(self):
        self._locked = True

    def add_attribute(self, definition: AttributeDefinition) -> AttributeDefinition:
        if self._locked:
            raise ConfigLockedError(f"add attribute {definition.element}.{definition.name}")
        self.attributes.append(definition)
        return definition

    def add_element(self, definition: ElementDefinition) -> ElementDefinition:
        if self._locked:
            raise ConfigLockedError(f"add element <{definition.name}>")
        self.elements.append(definition)
        return definition


class CompiledDefinition:
    """
    Frozen element/attribute tables the engine sanitizes against
    """

    def __init__(self,
                 elements: Dict[str, ElementRule],
                 global_attributes: Dict[str, AttributeRule],
                 block_elements: Iterable[str] = BLOCK_ELEMENTS):
        self.elements = elements
        self.global_attributes = global_attributes
        self.block_elements = frozenset(block_elements)

    @property
    def allowed_tags(self) -> frozenset:
        return frozenset(self.elements)

    @property
    def has_tree_constraints(self) -> bool:
        return any(
            rule.required_attributes or (rule.child_definition and not rule.child_definition.is_unrestricted)
            for rule in self.elements.values()
        )

    def allows_attribute(self, tag: str, name: str) -> bool:
        rule = self.elements.get(tag)
        return bool(rule and name in rule.attributes) or name in self.global_attributes

    def attribute_filter(self, schemes: Iterable[str]):
        """Build the ``attributes`` callable for bleach"""
        schemes = frozenset(schemes)

        def _filter(tag, name, value):
            rule = self.elements.get(tag)
            attribute = rule.attributes.get(name) if rule else None
            if attribute is None:
                attribute = self.global_attributes.get(name)
            if attribute is None:
                return False
            return attribute.spec.validate(value, schemes)

        return _filter

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form stored in the definition cache"""
        def _attrs(attributes):
            return {name: {'spec': rule.spec.spec, 'required': rule.required} for name, rule in attributes.items()}

        return {
            'elements': {
                name: {
                    'attributes': _attrs(rule.attributes),
                    'content_set': rule.content_set,
                    'allowed_children': rule.child_definition.spec if rule.child_definition else None,
                }
                for name, rule in self.elements.items()
            },
            'global_attributes': _attrs(self.global_attributes),
            'block_elements': sorted(self.block_elements),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'CompiledDefinition':
        def _attrs(attributes):
            return {
                name: AttributeRule(ValueSpec(entry['spec']), bool(entry.get('required')))
                for name, entry in attributes.items()
            }

        elements = {}
        for name, entry in data['elements'].items():
            children = entry.get('allowed_children')
            elements[name] = ElementRule(
                name=name,
                attributes=_attrs(entry.get('attributes', {})),
                content_set=entry.get('content_set'),
                child_definition=ChildDefinition(children) if children else None
            )

        return cls(elements, _attrs(data.get('global_attributes', {})), data.get('block_elements', BLOCK_ELEMENTS))


def compile_definition(base_elements: Mapping[str, Mapping[str, str]],
                       global_attributes: Mapping[str, str],
                       raw: Optional[HTMLDefinition] = None) -> CompiledDefinition:
    """
    Merge the directive-derived element table with the raw custom additions

    Attributes are applied before elements so an element registered later
    still picks up attributes declared for it.
    """
    elements = {
        name: ElementRule(name=name, attributes={attr: AttributeRule(ValueSpec(spec)) for attr, spec in attrs.items()})
        for name, attrs in base_elements.items()
    }
    global_rules = {name: AttributeRule(ValueSpec(spec)) for name, spec in global_attributes.items()}
    pending: Dict[str, Dict[str, AttributeRule]] = {}
    block_elements = set(BLOCK_ELEMENTS)

    if raw is None:
        return CompiledDefinition(elements, global_rules, block_elements)

    for attribute in raw.attributes:
        rule = AttributeRule(ValueSpec(attribute.valid_values), attribute.required)
        if attribute.element == '*':
            global_rules[attribute.name] = rule
        elif attribute.element in elements:
            elements[attribute.element].attributes[attribute.name] = rule
        else:
            pending.setdefault(attribute.element, {})[attribute.name] = rule

    for element in raw.elements:
        attributes = {}
        if element.attribute_collection:
            for attr_name, spec in ATTRIBUTE_COLLECTIONS[element.attribute_collection].items():
                attributes[attr_name] = AttributeRule(ValueSpec(spec))
        for attr_name, spec in element.attribute_overrides.items():
            attributes[attr_name] = AttributeRule(ValueSpec(spec), attr_name in element.required_attributes)
        attributes.update(pending.pop(element.name, {}))

        # Redefining a known element keeps attributes registered for it earlier
        existing = elements.get(element.name)
        if existing:
            attributes = {**existing.attributes, **attributes}

        elements[element.name] = ElementRule(
            name=element.name,
            attributes=attributes,
            content_set=element.content_set,
            child_definition=ChildDefinition(element.allowed_children)
        )

        if element.content_set == 'Block':
            block_elements.add(element.name)
        else:
            block_elements.discard(element.name)

    for element_name in pending:
        logger.debug(f"Attributes declared for unregistered element <{element_name}> are ignored")

    return CompiledDefinition(elements, global_rules, block_elements)
