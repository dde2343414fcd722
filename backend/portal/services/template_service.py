# backend/portal/services/template_service.py
"""
Template rendering service for the nutrition portal.

Renders the Jinja2 email bodies under ``portal/templates`` with a common
context (brand, year, frontend URL).
"""

from datetime import date, datetime
from decimal import Decimal
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from jinja2 import Environment, FileSystemLoader, TemplateNotFound, Undefined
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.constants import BRAND_NAME
from .base import BaseService
from .template_registry import TemplateRegistry

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent.parent / "templates"


def _currency(value: Union[int, float, Decimal, None]) -> str:
    """Format an amount as euros."""
    if value is None or isinstance(value, Undefined):
        return ""
    return f"€{Decimal(str(value)):,.2f}"


def _format_date(value: Union[date, datetime, str, None], format_str: str = "%d %B %Y") -> str:
    if not value:
        return ""
    if isinstance(value, str):
        try:
            value = date.fromisoformat(value[:10])
        except ValueError:
            return value
    return value.strftime(format_str)


class TemplateService(BaseService):
    """
    Centralized template rendering using Jinja2.

    The database session is optional; the service never queries it.
    """

    def __init__(self, db: Optional[Session] = None, template_dir: Optional[Path] = None):
        super().__init__(db)  # type: ignore[arg-type]
        directory = template_dir or TEMPLATE_DIR
        self.env = Environment(
            loader=FileSystemLoader(str(directory)),
            autoescape=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["currency"] = _currency
        self.env.filters["format_date"] = _format_date
        self.logger.debug(f"Template service initialized with template directory: {directory}")

    def get_common_context(self) -> Dict[str, Any]:
        return {
            "brand_name": BRAND_NAME,
            "current_year": datetime.now().year,
            "frontend_url": settings.frontend_url,
            "support_email": settings.from_email,
        }

    @BaseService.measure_operation("render_template")
    def render_template(
        self,
        template_name: Union[str, TemplateRegistry],
        context: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> str:
        """
        Render a template with the given context.

        Raises:
            TemplateNotFound: If template doesn't exist
        """
        name = template_name.value if isinstance(template_name, TemplateRegistry) else template_name
        try:
            template = self.env.get_template(name)
            full_context = self.get_common_context()
            if context:
                full_context.update(context)
            full_context.update(kwargs)
            return template.render(full_context)
        except TemplateNotFound:
            self.logger.error(f"Template not found: {name}")
            raise
        except Exception as e:
            self.logger.error(f"Error rendering template {name}: {str(e)}")
            raise

    def template_exists(self, template_name: Union[str, TemplateRegistry]) -> bool:
        name = template_name.value if isinstance(template_name, TemplateRegistry) else template_name
        try:
            self.env.get_template(name)
            return True
        except TemplateNotFound:
            return False
