"""
Pipeline Tests
==============
End-to-end runs of the LangGraph pipeline: input validation, the
parse -> analyzed -> fixes_generated -> validated progression, semantic
gating by scan mode and budget, and fix validation.
"""
import json

import pytest
from langchain_core.messages import AIMessage, HumanMessage
from langchain_core.runnables import RunnableLambda

from soc2_agent.errors import InvalidTransitionError
from soc2_agent.graph.nodes import FixOutcome, create_fix_node, parse_node, synthesize_fix, validate_node
from soc2_agent.graph.workflow import route_after_parse, run_pipeline, run_pipeline_sync
from soc2_agent.models import AgentStep, DetectionMethod, Fix, advance_step
from soc2_agent.tools.cost_governor import CostGovernor
from soc2_agent.tools.fix_synthesizer import FixSynthesizer
from soc2_agent.tools.semantic_analyzer import SemanticAnalyzer

from conftest import FLAT_PRICING, ai_message, fake_llm, make_violation


def _recording_model(answer="[]"):
    calls = []

    def model(messages):
        calls.append(messages)
        return AIMessage(content=answer)

    return RunnableLambda(model), calls


# ===========================================================================
# 1. Input validation
# ===========================================================================
class TestParse:

    async def test_empty_code_is_rejected(self):
        result = await run_pipeline({"file_path": "app/views.py", "code": "   \n"})
        assert result.success is False
        assert "empty" in result.error
        assert result.state["current_step"] == AgentStep.PARSE.value
        assert result.violations == []
        assert result.fixes == []

    async def test_empty_path_is_rejected(self):
        result = await run_pipeline({"file_path": "", "code": "password = 'admin123'"})
        assert result.success is False
        assert "path" in result.error
        assert result.state["current_step"] == AgentStep.PARSE.value

    async def test_missing_fields_are_rejected(self):
        result = await run_pipeline({})
        assert result.success is False
        assert "path" in result.error

    async def test_python_file_classified_as_django(self):
        result = await run_pipeline({"file_path": "app/views.py", "code": "x = 1\n"})
        assert result.success is True
        assert result.state["framework"] == "django"

    async def test_supplied_framework_is_preserved(self):
        result = await run_pipeline({"file_path": "app/views.py", "code": "x = 1\n", "framework": "flask"})
        assert result.state["framework"] == "flask"

    async def test_express_detected_from_code(self):
        code = "router.get('/api/users', (req, res) => {\n  res.json(users);\n});\n"
        result = await run_pipeline({"file_path": "routes/users.js", "code": code})
        assert result.state["framework"] == "express"
        assert [v.control_id for v in result.violations] == ["CC6.1"]
        assert "authenticate" in result.fixes[0].fixed_code

    async def test_unknown_extension_still_succeeds(self):
        result = await run_pipeline({"file_path": "notes.txt", "code": "nothing to see"})
        assert result.success is True
        assert result.state["framework"] == "unknown"
        assert result.violations == []

    def test_route_after_parse(self):
        assert route_after_parse({"error": "code is empty or whitespace-only"}) == "__end__"
        assert route_after_parse({"error": None}) == "analyze"

    def test_parse_node_keeps_given_timestamp(self):
        update = parse_node({"file_path": "a.py", "code": "x = 1", "timestamp": "2024-01-01T00:00:00+00:00"})
        assert update["timestamp"] == "2024-01-01T00:00:00+00:00"
        assert update["framework"] == "django"


# ===========================================================================
# 2. Pattern-only runs
# ===========================================================================
class TestPatternPipeline:

    async def test_hardcoded_password_end_to_end(self):
        result = await run_pipeline({"file_path": "config.py", "code": "password = 'admin123'\n"})

        assert result.success is True
        assert result.state["current_step"] == AgentStep.VALIDATED.value
        assert [v.id for v in result.violations] == ["v0"]
        assert result.violations[0].control_id == "CC6.7"
        assert len(result.fixes) == 1
        assert result.fixes[0].violation_id == "v0"
        assert "environment" in result.fixes[0].explanation

    async def test_every_violation_gets_one_fix(self):
        code = (
            "def user_profile(request):\n"
            "    user.profile.save()\n"
            "    return requests.get(external_url)\n"
        )
        result = await run_pipeline({"file_path": "app/views.py", "code": code})

        assert [v.control_id for v in result.violations] == ["CC6.1", "CC7.2", "A1.2"]
        assert [v.id for v in result.violations] == ["v0", "v1", "v2"]
        assert [f.violation_id for f in result.fixes] == ["v0", "v1", "v2"]
        assert "@login_required" in result.fixes[0].fixed_code
        assert "logger" in result.fixes[1].fixed_code
        assert "try" in result.fixes[2].fixed_code

    async def test_trace_has_one_message_per_node(self):
        result = await run_pipeline({"file_path": "config.py", "code": "password = 'admin123'\n"})
        messages = result.state["messages"]
        assert isinstance(messages[0], HumanMessage)
        assert len(messages) == 5

    async def test_timestamp_is_set(self):
        result = await run_pipeline({"file_path": "config.py", "code": "x = 1\n"})
        assert result.state["timestamp"]

    def test_sync_wrapper(self):
        result = run_pipeline_sync({"file_path": "config.py", "code": "password = 'admin123'\n"})
        assert result.success is True
        assert len(result.violations) == 1


# ===========================================================================
# 3. Semantic stage
# ===========================================================================
SEMANTIC_ANSWER = json.dumps(
    [
        {
            "controlId": "CC6.7",
            "severity": "critical",
            "description": "Database password committed to source",
            "lineNumber": 2,
            "confidenceScore": 95,
            "reasoning": "the literal is a production credential",
        },
        {
            "controlId": "CC7.2",
            "severity": "low",
            "description": "Password change is not audited",
            "lineNumber": 1,
            "confidenceScore": 60,
            "reasoning": "no log entry for the credential update",
        },
    ]
)

SEMANTIC_CODE = "import os\npassword = 'admin123'\n"


class TestSemanticPipeline:

    async def test_semantic_confirmation_becomes_hybrid(self):
        governor = CostGovernor(10.0, pricing=FLAT_PRICING)
        analyzer = SemanticAnalyzer(fake_llm(ai_message(SEMANTIC_ANSWER, input_tokens=900, output_tokens=120)), governor)

        result = await run_pipeline({"file_path": "settings.py", "code": SEMANTIC_CODE}, analyzer=analyzer, scan_mode="smart")

        assert result.success is True
        methods = [(v.control_id, v.detection_method) for v in result.violations]
        assert methods == [("CC6.7", DetectionMethod.HYBRID), ("CC7.2", DetectionMethod.SEMANTIC)]
        hybrid = result.violations[0]
        assert hybrid.line_number == 2
        assert hybrid.confidence_score == 95
        assert hybrid.pattern_reasoning and hybrid.semantic_reasoning
        assert [v.id for v in result.violations] == ["v0", "v1"]
        assert governor.snapshot().total_cost_usd > 0

    async def test_regex_only_never_calls_the_model(self):
        model, calls = _recording_model(SEMANTIC_ANSWER)
        governor = CostGovernor(10.0, pricing=FLAT_PRICING)

        result = await run_pipeline(
            {"file_path": "settings.py", "code": SEMANTIC_CODE},
            analyzer=SemanticAnalyzer(model, governor),
            scan_mode="regex_only",
        )

        assert calls == []
        assert governor.snapshot().total_cost_usd == 0
        assert [v.detection_method for v in result.violations] == [DetectionMethod.PATTERN]

    async def test_smart_mode_skips_irrelevant_files(self):
        model, calls = _recording_model()
        await run_pipeline({"file_path": "util.py", "code": "def add(a, b):\n    return a + b\n"},
                           analyzer=SemanticAnalyzer(model), scan_mode="smart")
        assert calls == []

    async def test_analyze_all_sends_every_supported_file(self):
        model, calls = _recording_model()
        await run_pipeline({"file_path": "util.py", "code": "def add(a, b):\n    return a + b\n"},
                           analyzer=SemanticAnalyzer(model), scan_mode="analyze_all")
        assert len(calls) == 1

    async def test_suspended_budget_keeps_pattern_results(self):
        model, calls = _recording_model(SEMANTIC_ANSWER)
        governor = CostGovernor(0.0, pricing=FLAT_PRICING)
        governor.check_limit()

        result = await run_pipeline({"file_path": "settings.py", "code": SEMANTIC_CODE},
                                    analyzer=SemanticAnalyzer(model, governor), scan_mode="smart")

        assert calls == []
        assert result.success is True
        assert [v.control_id for v in result.violations] == ["CC6.7"]

    async def test_model_failure_keeps_pattern_results(self):
        def broken(messages):
            raise ConnectionError("connection refused")

        result = await run_pipeline({"file_path": "settings.py", "code": SEMANTIC_CODE},
                                    analyzer=SemanticAnalyzer(RunnableLambda(broken)), scan_mode="smart")

        assert result.success is True
        assert [v.detection_method for v in result.violations] == [DetectionMethod.PATTERN]

    async def test_unexpected_error_becomes_failed_result(self):
        class ExplodingAnalyzer:
            governor = None

            async def analyze(self, *args, **kwargs):
                raise RuntimeError("boom")

        result = await run_pipeline({"file_path": "settings.py", "code": SEMANTIC_CODE},
                                    analyzer=ExplodingAnalyzer(), scan_mode="analyze_all")

        assert result.success is False
        assert "boom" in result.error


# ===========================================================================
# 4. Fix generation and validation
# ===========================================================================
class TestFixes:

    async def test_llm_fix_preferred(self):
        answer = "```python\npassword = os.environ['PASSWORD']\n```\nEXPLANATION: read from the environment"
        synth = FixSynthesizer(fake_llm(AIMessage(content=answer)))
        result = await run_pipeline({"file_path": "config.py", "code": "password = 'admin123'\n"},
                                    synthesizer=synth, use_llm_fixes=True)
        assert result.fixes[0].fixed_code == "password = os.environ['PASSWORD']"

    async def test_invalid_llm_fix_falls_back_to_template(self):
        synth = FixSynthesizer(fake_llm(AIMessage(content="```python\npassword = os.getenv(\n```")))
        result = await run_pipeline({"file_path": "config.py", "code": "password = 'admin123'\n"},
                                    synthesizer=synth, use_llm_fixes=True)
        assert result.fixes[0].fixed_code.startswith("password = os.getenv('PASSWORD')")

    async def test_failed_fix_is_skipped(self):
        violation = make_violation(control_id="A1.2", file_path="main.go", snippet="http.Get(url)", violation_id="v0")
        outcome = await synthesize_fix(FixSynthesizer(), violation, "unknown")
        assert isinstance(outcome, FixOutcome)
        assert not outcome.ok
        assert outcome.error

        node = create_fix_node()
        update = await node({"violations": [violation], "framework": "unknown", "current_step": "analyzed"})
        assert update["fixes"] == []
        assert update["current_step"] == "fixes_generated"

    def test_validate_drops_unknown_and_duplicate_fixes(self):
        violations = [make_violation(violation_id="v0"), make_violation(violation_id="v1", line_number=2)]
        fixes = [
            Fix(violation_id="v0", original_code="a", fixed_code="b", explanation="x"),
            Fix(violation_id="v0", original_code="a", fixed_code="c", explanation="dup"),
            Fix(violation_id="v7", original_code="a", fixed_code="d", explanation="orphan"),
            Fix(violation_id="v1", original_code="a", fixed_code="e", explanation="y"),
        ]
        update = validate_node({"violations": violations, "fixes": fixes, "current_step": "fixes_generated"})
        assert [f.fixed_code for f in update["fixes"]] == ["b", "e"]
        assert update["current_step"] == "validated"

    def test_validate_requires_fixes_generated(self):
        with pytest.raises(InvalidTransitionError):
            validate_node({"violations": [], "fixes": [], "current_step": "analyzed"})


class TestStepTransitions:

    def test_forward_only(self):
        assert advance_step("parse", "analyzed") == AgentStep.ANALYZED
        assert advance_step(AgentStep.ANALYZED, AgentStep.FIXES_GENERATED) == AgentStep.FIXES_GENERATED

    @pytest.mark.parametrize(
        "current,target",
        [("analyzed", "parse"), ("parse", "fixes_generated"), ("validated", "validated"), ("parse", "parse")],
    )
    def test_illegal_transitions(self, current, target):
        with pytest.raises(InvalidTransitionError):
            advance_step(current, target)
