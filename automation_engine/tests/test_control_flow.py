"""
Tests for condition, loop, group and random steps
"""

import asyncio
import random

import pytest

from automation_engine import (
    AutomationEngine,
    CancellationToken,
    ControlFlowEvaluator,
    ExecutionContext,
    RunReport,
    RunStatus,
    Step,
    StepStatus,
    StepValidationError,
    UnknownStepType,
    VariableStore,
)

COUNTER_LOOP_YAML = """
automation:
  id: counter
  steps:
    - id: init
      type: variable
      config: {name: counter, value: 0}
    - id: repeat
      type: loop
      config: {type: count, count: 3}
      children:
        body:
          - id: inc
            type: math
            config:
              operation: add
              number1: "{{ counter }}"
              number2: 1
              outputVariable: counter
    - id: show
      type: notification
      config: {message: "counter={{ counter }}"}
"""


class TestLoopStep:
    """Tests for loop steps."""

    @pytest.mark.asyncio
    async def test_count_loop_runs_exactly_n_times(self, engine, effects, load):
        """Test that a count loop executes its body exactly N times."""
        report = await engine.start(load(COUNTER_LOOP_YAML))

        assert report.status == RunStatus.SUCCEEDED
        assert len(report.records_for("inc")) == 3
        assert [r.path for r in report.records_for("inc")] == [
            "1.body[0].0",
            "1.body[1].0",
            "1.body[2].0",
        ]
        assert report.records_for("repeat")[0].output == {"iterations": 3}
        assert effects.calls_for("send_notification")[0].params["message"] == "counter=3"

    @pytest.mark.asyncio
    async def test_loop_record_precedes_body_records(self, engine, load):
        """Test that the loop is reported before the steps it dispatched."""
        report = await engine.start(load(COUNTER_LOOP_YAML))

        assert report.step_ids() == ["init", "repeat", "inc", "inc", "inc", "show"]

    @pytest.mark.asyncio
    async def test_count_zero_runs_nothing(self, engine, load):
        """Test that a zero count loop is a no-op."""
        yaml_str = COUNTER_LOOP_YAML.replace("count: 3", "count: 0")
        report = await engine.start(load(yaml_str))

        assert report.status == RunStatus.SUCCEEDED
        assert report.records_for("inc") == []

    @pytest.mark.asyncio
    async def test_count_above_ceiling_fails_before_first_iteration(self, make_engine, load):
        """Test that a count beyond the ceiling fails with LoopBoundExceeded."""
        engine = make_engine(max_loop_iterations=2)
        report = await engine.start(load(COUNTER_LOOP_YAML))

        assert report.status == RunStatus.FAILED
        assert report.error_type == "LoopBoundExceeded"
        assert report.records_for("inc") == []
        assert report.records_for("repeat")[0].status == StepStatus.FAILED

    @pytest.mark.asyncio
    async def test_while_loop_reevaluates_condition(self, engine, load):
        """Test that a while loop stops when its condition turns false."""
        yaml_str = """
automation:
  id: while
  steps:
    - id: init
      type: variable
      config: {name: n, value: 0}
    - id: repeat
      type: loop
      config:
        type: while
        expression: "n < 4"
        outputVariable: loops
      children:
        body:
          - id: inc
            type: math
            config: {operation: add, number1: "{{ n }}", number2: 1, outputVariable: n}
    - id: read
      type: get_variable
      config: {name: loops}
"""
        report = await engine.start(load(yaml_str))

        assert report.status == RunStatus.SUCCEEDED
        assert len(report.records_for("inc")) == 4
        assert report.records_for("read")[0].output == 4

    @pytest.mark.asyncio
    async def test_runaway_while_loop_hits_ceiling(self, make_engine, load):
        """Test that an always-true while loop never exceeds the ceiling."""
        yaml_str = """
automation:
  id: runaway
  steps:
    - id: forever
      type: loop
      config: {type: while, expression: "true"}
      children:
        body:
          - id: tick
            type: variable
            config: {name: t, value: 1}
    - id: after
      type: variable
      config: {name: x, value: 1}
"""
        engine = make_engine(max_loop_iterations=10)
        report = await engine.start(load(yaml_str))

        assert report.status == RunStatus.FAILED
        assert report.error_type == "LoopBoundExceeded"
        assert len(report.records_for("tick")) == 10
        assert report.records_for("after") == []

    @pytest.mark.asyncio
    async def test_max_iterations_lowers_ceiling(self, engine, load):
        """Test that maxIterations caps a single loop below the global ceiling."""
        yaml_str = """
automation:
  id: capped
  steps:
    - id: forever
      type: loop
      config: {type: while, expression: "1 == 1", maxIterations: 3, continueOnError: true}
      children:
        body:
          - id: tick
            type: variable
            config: {name: t, value: 1}
    - id: after
      type: variable
      config: {name: x, value: 1}
"""
        report = await engine.start(load(yaml_str))

        assert report.status == RunStatus.SUCCEEDED
        assert len(report.records_for("tick")) == 3
        assert report.records_for("forever")[0].error_type == "LoopBoundExceeded"
        assert report.records_for("after")[0].status == StepStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_foreach_exposes_item_and_index(self, engine, effects, load):
        """Test iterating a list variable."""
        yaml_str = """
automation:
  id: greet_all
  steps:
    - id: each
      type: loop
      config:
        type: foreach
        items: "{{ names }}"
        itemVariable: who
      children:
        body:
          - id: hello
            type: notification
            config: {message: "{{ loopIndex }}:{{ who }}"}
"""
        report = await engine.start(load(yaml_str), initial_variables={"names": ["Ada", "Bob"]})

        assert report.status == RunStatus.SUCCEEDED
        assert [c.params["message"] for c in effects.calls_for("send_notification")] == [
            "0:Ada",
            "1:Bob",
        ]

    @pytest.mark.asyncio
    async def test_foreach_accepts_json_list_text(self, engine, load):
        """Test that foreach items may be a JSON list string."""
        yaml_str = """
automation:
  id: json_items
  steps:
    - id: each
      type: loop
      config: {type: foreach, items: '[1, 2, 3]'}
      children:
        body:
          - id: copy
            type: get_variable
            config: {name: item}
"""
        report = await engine.start(load(yaml_str))

        assert [r.output for r in report.records_for("copy")] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_invalid_loop_config(self, engine, load):
        """Test that a loop without a bound is a validation failure."""
        yaml_str = """
automation:
  id: unbounded
  steps:
    - id: each
      type: loop
      config: {type: while}
"""
        report = await engine.start(load(yaml_str))

        assert report.status == RunStatus.FAILED
        assert report.error_type == "ValidationError"

    @pytest.mark.asyncio
    async def test_cancel_inside_loop(self, engine, load):
        """Test that cancellation stops a loop between iterations."""
        yaml_str = """
automation:
  id: slow_loop
  steps:
    - id: repeat
      type: loop
      config: {type: count, count: 100}
      children:
        body:
          - id: wait
            type: delay
            config: {delay: 20}
"""
        token = CancellationToken()
        task = asyncio.create_task(engine.start(load(yaml_str), token=token))
        await asyncio.sleep(0.1)
        token.cancel()
        report = await asyncio.wait_for(task, timeout=2.0)

        assert report.status == RunStatus.CANCELLED
        assert 0 < len(report.records_for("wait")) < 100
        assert report.records_for("repeat")[0].status == StepStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_fatal_child_failure_fails_loop(self, engine, effects, load):
        """Test that a fatal child failure propagates through the loop."""
        effects.set_webhook_response(503)
        yaml_str = """
automation:
  id: failing_body
  steps:
    - id: repeat
      type: loop
      config: {type: count, count: 3}
      children:
        body:
          - id: hook
            type: webhook
            config: {url: https://example.com/ping}
    - id: after
      type: variable
      config: {name: x, value: 1}
"""
        report = await engine.start(load(yaml_str))

        assert report.status == RunStatus.FAILED
        assert len(report.records_for("hook")) == 1
        assert report.records_for("repeat")[0].error_type == "ChildStepFailed"
        assert report.error_type == "EffectAdapterError"
        assert "hook" in report.error
        assert report.records_for("after") == []


class TestConditionStep:
    """Tests for condition steps."""

    @pytest.mark.asyncio
    async def test_true_expression_runs_then_only(self, engine, effects, load):
        """Test that a true condition runs only the then branch."""
        yaml_str = """
automation:
  id: cond
  steps:
    - id: check
      type: condition
      config: {expression: "{{ battery }} < 20 && !charging"}
      children:
        then:
          - id: low
            type: notification
            config: {message: low}
        else:
          - id: ok
            type: notification
            config: {message: ok}
"""
        report = await engine.start(
            load(yaml_str), initial_variables={"battery": "15", "charging": False}
        )

        assert report.step_ids() == ["check", "low"]
        assert report.records_for("check")[0].output == {"result": True, "branch": "then"}

    @pytest.mark.asyncio
    async def test_false_without_else_is_noop(self, engine, load):
        """Test that an omitted else list produces no steps."""
        yaml_str = """
automation:
  id: cond
  steps:
    - id: check
      type: condition
      config: {expression: "x == 'yes'"}
      then:
        - id: mark
          type: variable
          config: {name: y, value: 1}
"""
        report = await engine.start(load(yaml_str), initial_variables={"x": "no"})

        assert report.status == RunStatus.SUCCEEDED
        assert report.step_ids() == ["check"]

    @pytest.mark.asyncio
    async def test_structured_condition(self, engine, load):
        """Test the {variable, condition, value} form."""
        yaml_str = """
automation:
  id: cond
  steps:
    - id: check
      type: condition
      config:
        variable: battery
        condition: less
        value: "{{ threshold }}"
        outputVariable: is_low
      children:
        then:
          - id: low
            type: get_variable
            config: {name: is_low}
"""
        report = await engine.start(
            load(yaml_str), initial_variables={"battery": 10, "threshold": "20"}
        )

        assert report.step_ids() == ["check", "low"]
        assert report.records_for("low")[0].output is True

    @pytest.mark.asyncio
    async def test_undefined_variable_in_expression_fails(self, engine, load):
        """Test that an expression over an undefined name fails the run."""
        yaml_str = """
automation:
  id: cond
  steps:
    - id: check
      type: condition
      config: {expression: "ghost > 1"}
"""
        report = await engine.start(load(yaml_str))

        assert report.status == RunStatus.FAILED
        assert report.error_type == "UnresolvedVariable"

    @pytest.mark.asyncio
    async def test_expression_outside_grammar_fails(self, engine, load):
        """Test that unsupported syntax is an ExpressionError, not evaluated."""
        yaml_str = """
automation:
  id: cond
  steps:
    - id: check
      type: condition
      config: {expression: "__import__('os').getcwd() == x"}
"""
        report = await engine.start(load(yaml_str), initial_variables={"x": 1})

        assert report.status == RunStatus.FAILED
        assert report.error_type == "ExpressionError"

    @pytest.mark.asyncio
    async def test_nested_paths(self, engine, load):
        """Test report paths through nested control flow."""
        yaml_str = """
automation:
  id: nested
  steps:
    - id: first
      type: variable
      config: {name: go, value: true}
    - id: check
      type: condition
      config: {expression: go}
      children:
        then:
          - id: box
            type: group
            children:
              body:
                - id: twice
                  type: loop
                  config: {type: count, count: 2}
                  children:
                    body:
                      - id: leaf
                        type: variable
                        config: {name: x, value: 1}
"""
        report = await engine.start(load(yaml_str))

        assert report.status == RunStatus.SUCCEEDED
        assert [r.path for r in report.records_for("leaf")] == [
            "1.then.0.body.0.body[0].0",
            "1.then.0.body.0.body[1].0",
        ]


class TestGroupStep:
    """Tests for group steps."""

    @pytest.mark.asyncio
    async def test_group_runs_children_in_order(self, engine, load):
        """Test that a group is an ordinary sub-sequence sharing variables."""
        yaml_str = """
automation:
  id: grouped
  steps:
    - id: box
      type: group
      steps:
        - id: a
          type: variable
          config: {name: x, value: 2}
        - id: b
          type: math
          config: {operation: power, number1: "{{ x }}", number2: 10, outputVariable: y}
    - id: read
      type: get_variable
      config: {name: y}
"""
        report = await engine.start(load(yaml_str))

        assert report.step_ids() == ["box", "a", "b", "read"]
        assert report.records_for("read")[0].output == 1024
        assert report.records_for("a")[0].path == "0.body.0"

    @pytest.mark.asyncio
    async def test_group_with_continue_on_error_contains_failure(self, engine, load):
        """Test that continueOnError on a group keeps the run going after a fatal child."""
        yaml_str = """
automation:
  id: grouped
  steps:
    - id: box
      type: group
      config: {continueOnError: true}
      children:
        body:
          - id: bad
            type: teleport
          - id: skipped_by_failure
            type: variable
            config: {name: x, value: 1}
    - id: after
      type: variable
      config: {name: y, value: 2}
"""
        report = await engine.start(load(yaml_str))

        assert report.status == RunStatus.SUCCEEDED
        assert report.step_ids() == ["box", "bad", "after"]
        assert report.records_for("box")[0].status == StepStatus.FAILED


RANDOM_YAML = """
automation:
  id: dice
  steps:
    - id: pick
      type: random
      config: {outputVariable: chosen}
      children:
        branches:
          - weight: 1
            steps:
              - id: heads
                type: variable
                config: {name: side, value: heads}
          - weight: 1
            steps:
              - id: tails
                type: variable
                config: {name: side, value: tails}
          - steps:
              - id: edge
                type: variable
                config: {name: side, value: edge}
"""


class TestRandomStep:
    """Tests for random steps."""

    @pytest.mark.asyncio
    async def test_runs_exactly_one_branch(self, engine, load):
        """Test that one branch runs and the selection is recorded."""
        report = await engine.start(load(RANDOM_YAML))

        output = report.records_for("pick")[0].output
        branch_steps = [sid for sid in report.step_ids() if sid in ("heads", "tails", "edge")]
        assert len(branch_steps) == 1
        assert ["heads", "tails", "edge"][output["branch"]] == branch_steps[0]
        assert report.records_for(branch_steps[0])[0].path == f"0.branches[{output['branch']}].0"

    @pytest.mark.asyncio
    async def test_seeded_rng_is_reproducible(self, effects, load):
        """Test that equal seeds pick equal branches."""
        picks = []
        for _ in range(2):
            engine = AutomationEngine(effects=effects, rng=random.Random(1234))
            runs = [await engine.start(load(RANDOM_YAML)) for _ in range(5)]
            picks.append([r.records_for("pick")[0].output["branch"] for r in runs])

        assert picks[0] == picks[1]

    @pytest.mark.asyncio
    async def test_zero_weight_branch_never_runs(self, engine, load):
        """Test that weights steer the selection."""
        yaml_str = """
automation:
  id: weighted
  steps:
    - id: pick
      type: random
      branches:
        - weight: 0
          steps:
            - id: never
              type: variable
              config: {name: x, value: 1}
        - weight: 5
          steps:
            - id: always
              type: variable
              config: {name: x, value: 2}
"""
        for _ in range(10):
            report = await engine.start(load(yaml_str))
            assert "never" not in report.step_ids()
            assert "always" in report.step_ids()

    @pytest.mark.asyncio
    async def test_no_branches_is_noop(self, engine, load):
        """Test that a random step without branches succeeds."""
        yaml_str = """
automation:
  id: empty
  steps:
    - id: pick
      type: random
"""
        report = await engine.start(load(yaml_str))

        assert report.status == RunStatus.SUCCEEDED
        assert report.step_ids() == ["pick"]


class TestControlFlowEvaluator:
    """Tests for the evaluator registry."""

    def test_handles_control_flow_types(self):
        """Test the default control-flow handlers."""
        evaluator = ControlFlowEvaluator()

        assert sorted(evaluator.list_types()) == ["condition", "group", "loop", "random"]
        assert evaluator.handles("loop")
        assert not evaluator.handles("sms")

    def test_require_unknown_type(self):
        """Test that leaf types are not control flow."""
        with pytest.raises(UnknownStepType):
            ControlFlowEvaluator().require("sms", "s1")

    @pytest.mark.asyncio
    async def test_evaluate_condition_without_children(self):
        """Test evaluating a childless condition and storing its result."""
        context = ExecutionContext(
            automation_id="a",
            variables=VariableStore({"n": 4}),
            token=CancellationToken(),
            report=RunReport("a"),
        )

        outcome = await ControlFlowEvaluator().evaluate(
            Step(id="c", type="condition"),
            {"expression": "n > 3", "outputVariable": "big"},
            context,
        )

        assert outcome.output == {"result": True, "branch": "then"}
        assert context.variables.get("big") is True

    @pytest.mark.asyncio
    async def test_evaluate_invalid_config(self):
        """Test that evaluate validates the config first."""
        context = ExecutionContext(
            automation_id="a",
            variables=VariableStore(),
            token=CancellationToken(),
            report=RunReport("a"),
        )

        with pytest.raises(StepValidationError):
            await ControlFlowEvaluator().evaluate(Step(id="c", type="condition"), {}, context)
