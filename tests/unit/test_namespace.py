"""Unit tests for Namespace qualification and Workflow.namespace()."""

from __future__ import annotations

import pytest

from carriage.core.errors import ErrorCode, WorkflowValidationError
from carriage.core.models.namespace import Namespace
from carriage.core.workflow import Workflow

pytestmark = pytest.mark.unit


class TestNamespace:
    def test_default_namespace_leaves_names_unqualified(self) -> None:
        ns = Namespace.default()
        assert ns.is_default
        assert ns.full_name == ''
        assert ns.qualify('charge') == 'charge'

    def test_nested_namespaces_join_with_colon(self) -> None:
        ns = Namespace.default().child('payment').child('refund')
        assert ns.full_name == 'payment:refund'
        assert ns.qualify('issue') == 'payment:refund:issue'

    def test_namespaces_are_value_objects(self) -> None:
        assert Namespace('payment') == Namespace('payment')
        assert Namespace('payment').child('a') != Namespace('payment').child('b')


class TestWorkflowNamespace:
    """Tasks declared inside ``workflow.namespace()`` get qualified names."""

    def test_tasks_inside_block_are_qualified(self) -> None:
        wf = Workflow('billing')

        with wf.namespace('payment'):

            @wf.task('charge')
            def charge(ctx):
                return None

            with wf.namespace('refund'):

                @wf.task('issue')
                def issue(ctx):
                    return None

        @wf.task('notify')
        def notify(ctx):
            return None

        assert wf.graph.names() == ['payment:charge', 'payment:refund:issue', 'notify']
        assert wf.fetch_task('payment:refund:issue').name == 'issue'

    def test_namespace_is_restored_after_exception(self) -> None:
        wf = Workflow('billing')
        with pytest.raises(RuntimeError):
            with wf.namespace('payment'):
                raise RuntimeError('boom')
        assert wf.current_namespace.is_default

    def test_same_task_name_in_different_namespaces_is_allowed(self) -> None:
        wf = Workflow('billing')
        with wf.namespace('a'):
            wf.task('step')(lambda ctx: None)
        with wf.namespace('b'):
            wf.task('step')(lambda ctx: None)
        assert wf.graph.names() == ['a:step', 'b:step']

    def test_invalid_namespace_name_rejected(self) -> None:
        wf = Workflow('billing')
        with pytest.raises(WorkflowValidationError) as exc_info:
            with wf.namespace('a:b'):
                pass
        assert exc_info.value.code == ErrorCode.WORKFLOW_INVALID_TASK_NAME

    def test_hooks_cannot_be_declared_inside_namespace(self) -> None:
        wf = Workflow('billing')
        with wf.namespace('payment'):
            with pytest.raises(WorkflowValidationError) as exc_info:
                wf.before()
        assert exc_info.value.code == ErrorCode.WORKFLOW_NAMESPACE_SCOPE

    def test_arguments_cannot_be_declared_inside_namespace(self) -> None:
        wf = Workflow('billing')
        with wf.namespace('payment'):
            with pytest.raises(WorkflowValidationError):
                wf.argument('customer_id')
