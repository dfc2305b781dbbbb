from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from stepwise.planning.schema import Layer, LayerInfo, Step, StepKind, Target
from stepwise.policy.layers import (
    ArchitectureViolation,
    LayerRule,
    LayerRuleTable,
    RuleKind,
    RuleTableError,
    describe_failure_context,
    parse_rules,
)

DOMAIN = LayerInfo(target=Target.BACKEND, layer=Layer.DOMAIN)
DATA = LayerInfo(target=Target.BACKEND, layer=Layer.DATA)


def _step(payload: str, kind: StepKind = StepKind.CREATE_FILE) -> Step:
    return Step(id="s1", kind=kind, target_path="src/file.ts", payload=payload)


@pytest.mark.parametrize(
    "payload",
    [
        "import axios from 'axios'",
        'import { PrismaClient } from "@prisma/client"',
        "import redis",
    ],
)
def test_precheck_rejects_external_dependencies_in_domain(payload: str) -> None:
    table = LayerRuleTable()

    with pytest.raises(ArchitectureViolation) as excinfo:
        table.precheck(_step(payload), DOMAIN)

    assert excinfo.value.rule.name == "domain-external-dependency"
    assert "Domain layer architecture violation in step 's1'" in str(excinfo.value)


def test_precheck_allows_clean_domain_payload() -> None:
    result = LayerRuleTable().precheck(_step("export interface User { id: string }"), DOMAIN)

    assert result.warnings == []


def test_precheck_warns_when_required_pattern_missing() -> None:
    result = LayerRuleTable().precheck(_step("export class UserRepository {}"), DATA)

    assert len(result.warnings) == 1
    assert "Data layer warning" in result.warnings[0]


def test_precheck_ignores_non_file_steps_and_unknown_layers() -> None:
    table = LayerRuleTable()
    folder_step = Step(id="f", kind=StepKind.DELETE_FILE, target_path="a.ts", payload="import axios")

    assert table.precheck(folder_step, DOMAIN).warnings == []
    assert table.precheck(_step("import axios"), None).warnings == []


def test_score_only_rules_are_skipped_by_precheck() -> None:
    table = LayerRuleTable()
    presentation = LayerInfo(target=Target.FRONTEND, layer=Layer.PRESENTATION)

    result = table.precheck(_step("const total = compute(items)"), presentation)

    assert result.warnings == []


def test_modifiers_list_layer_specific_rules_before_global_ones() -> None:
    rules = [
        LayerRule(name="global", layer="all", kind=RuleKind.MODIFIER, pattern="x", score_impact=1),
        LayerRule(name="domain", layer="domain", kind=RuleKind.MODIFIER, pattern="x", score_impact=-1),
        LayerRule(name="data", layer="data", kind=RuleKind.MODIFIER, pattern="x", score_impact=-1),
    ]
    table = LayerRuleTable(rules)

    assert [rule.name for rule in table.modifiers(Layer.DOMAIN)] == ["domain", "global"]


def test_invalid_pattern_is_rejected() -> None:
    with pytest.raises(RuleTableError):
        LayerRuleTable([LayerRule(name="bad", layer="all", kind=RuleKind.MODIFIER, pattern="(")])


def test_parse_rules_reads_rules_and_common_errors() -> None:
    rules = parse_rules(
        {
            "rules": [
                {"name": "no-console", "layer": "domain", "kind": "forbidden", "pattern": "console\\.log"},
            ],
            "learning_patterns": {
                "common_errors": [
                    {"regex": "any\\b", "score_impact": -1, "fix": "Avoid any"},
                ]
            },
        }
    )

    assert [rule.kind for rule in rules] == [RuleKind.FORBIDDEN, RuleKind.MODIFIER]
    assert rules[1].layer == "all"
    assert rules[1].message == "Avoid any"


def test_parse_rules_rejects_unknown_layer() -> None:
    with pytest.raises(RuleTableError):
        parse_rules({"rules": [{"pattern": "x", "layer": "kernel"}]})


def test_from_sources_merges_file_rules_and_skips_missing(tmp_path: Path) -> None:
    rules_path = tmp_path / "rules.yaml"
    rules_path.write_text(
        textwrap.dedent(
            """
            rules:
              - name: domain-no-console
                layer: domain
                kind: forbidden
                pattern: console\\.log
                message: No logging in the domain layer
            """
        ).lstrip(),
        encoding="utf-8",
    )

    table = LayerRuleTable.from_sources(rules_path, tmp_path / "missing.yaml")

    with pytest.raises(ArchitectureViolation, match="No logging in the domain layer"):
        table.precheck(_step("console.log('hi')"), DOMAIN)


def test_describe_failure_context_adds_layer_hint() -> None:
    message = describe_failure_context(DOMAIN, "Cannot import module")

    assert message.splitlines()[0] == "Layer context: backend / domain"
    assert "external dependencies are not allowed" in message
    assert message.endswith("Original error: Cannot import module")
    assert describe_failure_context(None, "plain") == "plain"
