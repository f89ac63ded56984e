from __future__ import annotations

import random
import re
from collections.abc import Collection, Sequence

from pool_router.config import ModelMappingRule

WILDCARD = "*"


class ModelMappingRouter:
    """Resolves a requested model name to the upstream model to call.

    Rules are matched against the requested model (exact name, ``*`` or a
    pattern in which only ``*`` is a wildcard), filtered by API key scope and
    ordered by priority, highest first; ties keep declaration order. Only the
    first matching rule applies.
    """

    def __init__(
        self,
        rules: Sequence[ModelMappingRule] = (),
        *,
        rng: random.Random | None = None,
    ) -> None:
        self._rules: tuple[ModelMappingRule, ...] = tuple(rules)
        self._rng = rng or random.Random()

    @property
    def rules(self) -> tuple[ModelMappingRule, ...]:
        return self._rules

    def replace_rules(self, rules: Sequence[ModelMappingRule]) -> None:
        self._rules = tuple(rules)

    def matching_rule(
        self,
        requested_model: str,
        api_key_id: str | None,
    ) -> ModelMappingRule | None:
        candidates = [
            (index, rule)
            for index, rule in enumerate(self._rules)
            if rule.enabled
            and _in_scope(rule, api_key_id)
            and _source_matches(rule.source_model, requested_model)
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda item: (-item[1].priority, item[0]))
        return candidates[0][1]

    def resolve(self, requested_model: str, api_key_id: str | None) -> list[str]:
        rule = self.matching_rule(requested_model, api_key_id)
        if rule is None:
            return [requested_model]
        return [self._pick(rule, rule.target_models)]

    def resolve_alternative(
        self,
        requested_model: str,
        api_key_id: str | None,
        attempted: Collection[str],
    ) -> str:
        rule = self.matching_rule(requested_model, api_key_id)
        if rule is None:
            return requested_model
        untried = [model for model in rule.target_models if model not in attempted]
        if not untried:
            return requested_model
        return self._pick(rule, untried)

    def advertised_models(self) -> list[str]:
        models: list[str] = []
        for rule in self._rules:
            if not rule.enabled:
                continue
            if WILDCARD not in rule.source_model:
                models.append(rule.source_model)
            models.extend(rule.target_models)
        return _dedupe_preserving_order(models)

    def _pick(self, rule: ModelMappingRule, targets: list[str]) -> str:
        if rule.mapping_type != "loadbalance" or len(targets) == 1:
            return targets[0]
        weights = rule.effective_weights()
        if weights is None:
            return self._rng.choice(targets)
        weight_by_model = dict(zip(rule.target_models, weights, strict=True))
        return self._rng.choices(
            targets, weights=[weight_by_model[model] for model in targets], k=1
        )[0]


def _in_scope(rule: ModelMappingRule, api_key_id: str | None) -> bool:
    if not rule.api_key_ids:
        return True
    return api_key_id is not None and api_key_id in rule.api_key_ids


def _source_matches(source_model: str, requested_model: str) -> bool:
    if source_model == WILDCARD or source_model == requested_model:
        return True
    if WILDCARD in source_model:
        pattern = re.escape(source_model).replace(r"\*", ".*")
        return re.fullmatch(pattern, requested_model) is not None
    return False


def _dedupe_preserving_order(values: list[str]) -> list[str]:
    seen: set[str] = set()
    output: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        output.append(value)
    return output
