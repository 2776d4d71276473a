# widgets/timeline.py
"""
Vertical timeline widget
Item titles and times are escaped; item content is raw HTML and goes
through the sanitization gateway when one is supplied
"""

import secrets
import logging
from pathlib import Path
from typing import List, Optional, Any, Mapping, Iterable, Union
from dataclasses import dataclass

from jinja2 import Environment, FileSystemLoader, select_autoescape
from markupsafe import Markup, escape

# Configure logging
logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / 'templates'

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(['html', 'xml']),
    trim_blocks=True,
    lstrip_blocks=True
)


@dataclass
class TimelineItem:
    """One entry of the timeline"""
    title: str
    content: Any = ''
    time: str = ''
    icon: str = 'fas fa-circle'
    time_label: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'TimelineItem':
        return cls(
            title=data.get('title', ''),
            content=data.get('content', ''),
            time=data.get('time', ''),
            icon=data.get('icon') or 'fas fa-circle',
            time_label=data.get('time_label')
        )


class Timeline:
    """
    Timeline widget rendering a list of items

    Args:
        items: TimelineItem instances or mappings with the same keys
        id: DOM id of the widget, random when omitted
        gateway: SanitizationGateway used to clean item content
        profile: Gateway profile for item content
    """

    template_name = 'timeline.html'

    def __init__(self,
                 items: Optional[Iterable[Union[TimelineItem, Mapping[str, Any]]]] = None,
                 id: Optional[str] = None,
                 gateway=None,
                 profile: Optional[str] = None):
        self.id = id or f"timeline-{secrets.token_hex(4)}"
        self.gateway = gateway
        self.profile = profile
        self.items: List[TimelineItem] = []
        for item in items or ():
            self.add(item)

    def add(self, item: Union[TimelineItem, Mapping[str, Any]]) -> 'Timeline':
        if isinstance(item, Mapping):
            item = TimelineItem.from_mapping(item)
        elif not isinstance(item, TimelineItem):
            raise TypeError(f"Timeline items must be TimelineItem or mapping, got {type(item).__name__}")
        self.items.append(item)
        return self

    def _content(self, content: Any) -> Markup:
        if isinstance(content, Markup):
            return content
        if content is None:
            return Markup('')
        if self.gateway is not None:
            return Markup(self.gateway.clean(str(content), self.profile))
        return escape(content)

    def render(self) -> Markup:
        template = _env.get_template(self.template_name)
        items = [
            {
                'title': item.title,
                'time': item.time,
                'icon': item.icon,
                'time_label': item.time_label,
                'content': self._content(item.content),
            }
            for item in self.items
        ]
        html = template.render(id=self.id, items=items)
        logger.debug(f"Rendered timeline {self.id} with {len(items)} items")
        return Markup(html)

    def __html__(self) -> str:
        return self.render()

    def __str__(self) -> str:
        return str(self.render())
