from pathlib import Path
from typing import Dict, List, Optional

import structlog

from domain.exceptions import AgentDefinitionNotFoundError
from domain.models.agent import AgentDefinition
from infrastructure.definitions.definition_loader import load_agent_definitions

logger = structlog.get_logger(__name__)


class AgentDefinitionService:
    """Read access to the agent definitions shipped as files"""

    def __init__(self, definitions_dir: Optional[Path] = None, default_definition_id: Optional[str] = None,
                 definitions: Optional[List[AgentDefinition]] = None):
        self.definitions_dir = definitions_dir
        self.default_definition_id = default_definition_id
        self._extra = list(definitions or [])
        self._definitions: Dict[str, AgentDefinition] = {}
        self.reload()

    def reload(self) -> int:
        """Re-read the definitions directory; returns the number of definitions"""

        definitions = load_agent_definitions(self.definitions_dir) if self.definitions_dir else {}
        for definition in self._extra:
            definitions[definition.id] = definition
        self._definitions = definitions
        if self.default_definition_id and self.default_definition_id not in definitions:
            logger.warning("Default agent definition not found", definition_id=self.default_definition_id)
        return len(definitions)

    def get_agent_def(self, definition_id: Optional[str] = None) -> AgentDefinition:
        """Definition by id, or the default one when no id is given"""

        if definition_id is None:
            definition_id = self.default_definition_id
            if definition_id is None and self._definitions:
                definition_id = next(iter(self._definitions))
        definition = self._definitions.get(definition_id) if definition_id else None
        if definition is None:
            raise AgentDefinitionNotFoundError(
                f"Agent definition {definition_id} not found",
                details={"definition_id": definition_id},
            )
        return definition

    def get_agent_defs(self, search_name: Optional[str] = None) -> List[AgentDefinition]:
        definitions = list(self._definitions.values())
        if search_name:
            needle = search_name.lower()
            definitions = [definition for definition in definitions if needle in definition.name.lower()]
        return definitions
