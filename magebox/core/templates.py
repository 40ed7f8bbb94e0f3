import logging
from pathlib import Path
from typing import Optional

import jinja2

from . import config
from .exceptions import TemplateNotFoundError

logger = logging.getLogger(__name__)

# Templates shipped inside the package; used when neither the local override
# directory nor the template library has a copy.
EMBEDDED_TEMPLATES_DIR = Path(__file__).resolve().parent.parent / 'templates'

_jinja_env = jinja2.Environment(
    keep_trailing_newline=True,
    trim_blocks=True,
    lstrip_blocks=True,
    undefined=jinja2.StrictUndefined,
)


class TemplateLoader:
    """
    Resolves template text by (category, name).

    Lookup order:
      1. <local_dir>/templates/<category>/<name>   (user overrides)
      2. <lib_dir>/templates/<category>/<name>     (template library)
      3. templates embedded in the package
    """

    def __init__(self, local_dir: Optional[Path] = None, lib_dir: Optional[Path] = None,
                 embedded_dir: Optional[Path] = None):
        self.local_dir = Path(local_dir) if local_dir else config.LOCAL_LIB_DIR
        self.lib_dir = Path(lib_dir) if lib_dir else config.LIB_DIR
        self.embedded_dir = Path(embedded_dir) if embedded_dir else EMBEDDED_TEMPLATES_DIR

    def template_path(self, category: str, name: str) -> Optional[Path]:
        """Path of the template file that would be used, or None."""
        for root in (self.local_dir, self.lib_dir):
            candidate = root / 'templates' / category / name
            if candidate.is_file():
                return candidate
        embedded = self.embedded_dir / category / name
        if embedded.is_file():
            return embedded
        return None

    def get_template(self, category: str, name: str) -> str:
        path = self.template_path(category, name)
        if path is None:
            raise TemplateNotFoundError(f"template {category}/{name} not found")
        logger.debug(f"TEMPLATES: Loading {category}/{name} from {path}")
        try:
            return path.read_text(encoding='utf-8')
        except OSError as e:
            raise TemplateNotFoundError(f"template {category}/{name} could not be read from {path}: {e}") from e


def render(template_text: str, **context) -> str:
    """Renders template text with Jinja2."""
    return _jinja_env.from_string(template_text).render(**context)


_default_loader: Optional[TemplateLoader] = None

def get_default_loader() -> TemplateLoader:
    global _default_loader
    if _default_loader is None:
        _default_loader = TemplateLoader()
    return _default_loader
