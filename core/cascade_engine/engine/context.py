"""
Cascade context - what earlier nodes of a run hand down to later ones.

Siblings may read variables seeded by earlier siblings, which is why the
executor runs strictly in order. This module only accumulates responses
and names them; substituting them into prompt text is the generation
client's business.
"""

import json
from dataclasses import dataclass, field

from cascade_engine.tree.node import NodeId, PromptNode


@dataclass
class AccumulatedResponse:
    level_index: int
    node_id: NodeId
    node_name: str
    response: str


@dataclass
class CascadeContext:
    """Responses produced so far in one cascade, in completion order."""

    root: PromptNode
    responses: list[AccumulatedResponse] = field(default_factory=list)

    def add(self, level_index: int, node: PromptNode, response: str) -> None:
        self.responses.append(
            AccumulatedResponse(
                level_index=level_index,
                node_id=node.id,
                node_name=node.display_name,
                response=response,
            )
        )

    def build_variables(
        self,
        level_index: int,
        parent: PromptNode | None = None,
    ) -> dict[str, str]:
        """
        Variables visible to the next node.

        Includes the previous response, every response as JSON, per-level
        response slots and ``q.ref[<id>]`` references to completed nodes.
        """
        variables: dict[str, str] = {
            "q.toplevel.prompt.name": self.root.display_name,
            "q.parent.prompt.name": parent.display_name if parent else "",
            "cascade_level": str(level_index),
            "cascade_prompt_count": str(len(self.responses)),
            "cascade_all_responses": json.dumps(
                [
                    {"level": r.level_index, "promptName": r.node_name, "response": r.response}
                    for r in self.responses
                ]
            ),
        }

        if self.responses:
            last = self.responses[-1]
            variables["cascade_previous_response"] = last.response
            variables["cascade_previous_name"] = last.node_name
            variables["q.previous.response"] = last.response
            variables["q.previous.name"] = last.node_name

        for idx, r in enumerate(self.responses):
            variables[f"cascade_level_{r.level_index}_response_{idx}"] = r.response
            variables[f"q.ref[{r.node_id}].output_response"] = r.response
            variables[f"q.ref[{r.node_id}].prompt_name"] = r.node_name

        return variables
