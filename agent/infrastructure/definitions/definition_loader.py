"""Parser for agent definition files (YAML or JSON)."""

import json
from pathlib import Path
from typing import Dict

import structlog
import yaml
from pydantic import ValidationError

from domain.exceptions import AgentDefinitionParseError
from domain.models.agent import AgentDefinition

logger = structlog.get_logger(__name__)

DEFINITION_SUFFIXES = {".yaml", ".yml", ".json"}


def parse_agent_definition_file(file_path: Path) -> AgentDefinition:
    """Parse an agent definition file.

    Args:
        file_path: Path to a ``.yaml``, ``.yml`` or ``.json`` file.

    Returns:
        AgentDefinition instance. The id defaults to the file stem.

    Raises:
        AgentDefinitionParseError: If the file cannot be read, parsed or validated.
    """
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            if file_path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except FileNotFoundError:
        raise AgentDefinitionParseError("File not found", file_path)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise AgentDefinitionParseError(f"Invalid syntax: {e}", file_path)
    except OSError as e:
        raise AgentDefinitionParseError(f"Failed to read file: {e}", file_path)

    if not isinstance(data, dict):
        raise AgentDefinitionParseError("Definition root must be a mapping", file_path)

    data.setdefault("id", file_path.stem)
    if "name" not in data:
        raise AgentDefinitionParseError("Missing required field: name", file_path)

    try:
        return AgentDefinition.model_validate(data)
    except ValidationError as e:
        raise AgentDefinitionParseError(f"Invalid agent definition: {e}", file_path)


def load_agent_definitions(directory: Path) -> Dict[str, AgentDefinition]:
    """Load every definition file in a directory; broken files are logged and skipped"""

    definitions: Dict[str, AgentDefinition] = {}
    if not directory.is_dir():
        logger.warning("Agent definitions directory not found", directory=str(directory))
        return definitions

    for file_path in sorted(directory.iterdir()):
        if file_path.suffix not in DEFINITION_SUFFIXES:
            continue
        try:
            definition = parse_agent_definition_file(file_path)
        except AgentDefinitionParseError as e:
            logger.error("Skipping invalid agent definition", file_path=str(file_path), error=e.message)
            continue
        if definition.id in definitions:
            logger.warning("Duplicate agent definition id", definition_id=definition.id, file_path=str(file_path))
        definitions[definition.id] = definition

    logger.info("Loaded agent definitions", directory=str(directory), count=len(definitions))
    return definitions
