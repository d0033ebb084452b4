from dataclasses import dataclass
from typing import List, Optional, Union

from domain.models.prompt import InjectPosition, PromptNode


@dataclass
class PromptLocation:
    """A node together with the list that holds it"""
    prompt: PromptNode
    parent: List[PromptNode]
    index: int


def find_prompt_by_id(prompts: List[PromptNode], prompt_id: str) -> Optional[PromptLocation]:
    """Depth-first search for a node by id"""
    for index, prompt in enumerate(prompts):
        if prompt.id == prompt_id:
            return PromptLocation(prompt=prompt, parent=prompts, index=index)
        if prompt.children:
            found = find_prompt_by_id(prompt.children, prompt_id)
            if found:
                return found
    return None


def insert_prompt(
    prompts: List[PromptNode],
    target_id: str,
    node: PromptNode,
    position: Union[InjectPosition, str],
) -> bool:
    """Insert a node before, after or as the last child of a target

    Returns False when the target does not exist; the tree is left untouched.
    """
    target = find_prompt_by_id(prompts, target_id)
    if target is None:
        return False

    position = InjectPosition(position)
    if position == InjectPosition.CHILD:
        target.prompt.children.append(node)
    elif position == InjectPosition.BEFORE:
        target.parent.insert(target.index, node)
    else:
        target.parent.insert(target.index + 1, node)
    return True


def clone_prompts(prompts: List[PromptNode]) -> List[PromptNode]:
    return [prompt.model_copy(deep=True) for prompt in prompts]

