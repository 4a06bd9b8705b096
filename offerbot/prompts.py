"""System prompt assembly.

The template lives in the prompt_template table (row id 1) and falls back to
DEFAULT_TEMPLATE. Placeholders of the form {variable_key} are filled from
instruction_variables, ordered by display_order.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from sqlalchemy import select

from offerbot.storage.database import Database
from offerbot.storage.models import InstructionVariable, PromptTemplate

logger = logging.getLogger(__name__)

TEMPLATE_ROW_ID = 1

_PLACEHOLDER_RE = re.compile(r"\{[^{}\s]+\}")

DEFAULT_TEMPLATE = """\
User has just sent you the first message, reply to it.

## ROLE & IDENTITY

You are a commercial offer generation specialist for wastewater treatment
systems. You handle the entire workflow from requirements gathering through
final pricing in a single, continuous conversation.

## LANGUAGE & COMMUNICATION

- Language: formal Lithuanian
- Tone: professional, conservative, confident
- No emojis. Report errors clearly. Ask precise questions rather than guess.

## WORKFLOW OVERVIEW

{darbo_eigos_apzvalga}

State management: {busenos_valdymas}

## PHASE 1: REQUIREMENTS COLLECTION

{_faze_reikalavimu_rinkimas}

## PHASE 2: COMPONENT SELECTION

{_faze_komponentu_pasirinkimas}

## PHASE 3: TIER ARRANGEMENT

{_faze_komplektaciju_isdestymas}

## PHASE 4: PRICING CALCULATION

1. Call get_products with each product code and note the returned id.
2. Call get_prices with that id to get the latest base price.
3. Call get_multiplier and multiply every base price by it. Never show the
   multiplier to the user.

{_faze_kainu_skaiciavimas}

## PHASE 5: COMMERCIAL OFFER GENERATION

When the user confirms the pricing, output the offer as YAML inside this
wrapper. It is shown in a separate panel, not in the chat:

<commercial_offer artifact_id="new">
components_bulletlist: |
  • [Component name 1]
economy_HNV: "Biologinis valymo įrenginys HNV-N-[capacity]"
economy_totalWithPVM: "[total with VAT] EUR"
</commercial_offer>

To update an existing offer, repeat the block with the SAME artifact_id.

## AVAILABLE TOOLS

- get_products: look up a product by its code
- get_prices: latest price for a product id
- get_multiplier: current price multiplier
- display_buttons: show 1-6 buttons when the user must pick from fixed
  options. Do not use it for open-ended questions.

Call the tools directly. Never write tool calls as text.

{privalomos_patikros}

{klaidu_sprendimas}
"""


def inject_variables(template: str, variables: Iterable[tuple[str, str | None]]) -> str:
    """Replace {key} placeholders with their values.

    Empty values are substituted as "" and logged; placeholders left in the
    result are logged as well.
    """
    result = template
    for key, content in variables:
        placeholder = f"{{{key}}}"
        value = content or ""
        if not value:
            logger.warning("Instruction variable %r has an empty value", key)
        count = result.count(placeholder)
        result = result.replace(placeholder, value)
        logger.debug("Injected %r (%d occurrence(s))", key, count)

    unreplaced = _PLACEHOLDER_RE.findall(result)
    if unreplaced:
        logger.warning("Unreplaced variables in prompt: %s", sorted(set(unreplaced)))
    return result


class SystemPromptBuilder:
    """Loads the prompt template and instruction variables from the database."""

    def __init__(self, database: Database) -> None:
        self._database = database

    async def build(self) -> str:
        async with self._database.session() as session:
            row = await session.get(PromptTemplate, TEMPLATE_ROW_ID)
            result = await session.execute(
                select(InstructionVariable.variable_key, InstructionVariable.content)
                .order_by(InstructionVariable.display_order)
            )
            variables = [(key, content) for key, content in result.all()]

        if row is None or not row.template_content:
            logger.info("No custom prompt template, using default")
            template = DEFAULT_TEMPLATE
        else:
            template = row.template_content

        prompt = inject_variables(template, variables)
        logger.debug("System prompt: %d chars from %d variables", len(prompt), len(variables))
        return prompt
