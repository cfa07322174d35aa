"""Protocol templates: read-only reference data cached from the server."""
import logging
from typing import Iterable, List, Optional

from ..models.protocol import ProtocolTemplate
from ..schemas import ProtocolTemplateDto
from .base import OfflineRepository

logger = logging.getLogger(__name__)


class TemplateRepository(OfflineRepository):
    model = ProtocolTemplate
    dto = ProtocolTemplateDto

    def cache_templates(self, templates: Iterable) -> int:
        return self._cache(templates)

    def list_templates(self) -> List[ProtocolTemplate]:
        return self.store.query(ProtocolTemplate, order_by=ProtocolTemplate.name)

    def get_template(self, template_id: str) -> Optional[ProtocolTemplate]:
        return self.store.get(ProtocolTemplate, template_id)

    def delete_template(self, template_id: str) -> bool:
        """Drop a template from the cache; protocols keep their text."""
        deleted = self.store.delete(ProtocolTemplate, template_id)
        if deleted:
            logger.info("Removed cached template %s", template_id)
        return deleted
