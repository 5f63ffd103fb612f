from unittest import mock

from django.core.exceptions import ValidationError
from django.test import TestCase

from apps.activity_log.models import TaskActivity
from apps.collection_points.models import CollectionPoint
from apps.intel_tasks.models import IntelTask, TaskTemplate
from apps.intel_tasks.services import (
    create_tasks_from_template,
    distribute_tasks,
    execute_template_by_point_type,
    preview_distribution,
)
from apps.organizations.models import Department, Organization
from tests.helpers import allocate, local, make_point, make_template, make_user

Mode = TaskTemplate.AssigneeMode


class CreateTasksFromTemplateTests(TestCase):
    def setUp(self):
        self.org = Organization.objects.create(name='Headquarters', code='HQ')
        self.dept = Department.objects.create(organization=self.org, name='Research', code='RES')
        self.alice = make_user('alice@example.com', organization=self.org, department=self.dept)
        self.bob = make_user('bob@example.com')
        self.template = make_template(
            name='Corn price',
            assignee_ids=[self.alice.pk, self.bob.pk],
            due_at_minute=1080,
        )

    def test_creates_one_task_per_assignee_with_snapshot(self):
        run_at = local(2024, 3, 1, 9, 0)

        result = create_tasks_from_template(self.template, run_at=run_at)

        self.assertEqual(result['count'], 2)
        self.assertEqual(result['assignee_ids'], [self.alice.pk, self.bob.pk])
        task = IntelTask.objects.get(assignee=self.alice)
        self.assertEqual(task.title, 'Corn price [2024-03-01]')
        self.assertEqual(task.assignee_org, self.org)
        self.assertEqual(task.assignee_dept, self.dept)
        self.assertEqual(task.due_at, local(2024, 3, 1, 18, 0))
        self.assertEqual(task.deadline, task.due_at)
        self.assertEqual(task.period_key, '2024-03-01')
        self.assertEqual(task.status, IntelTask.Status.PENDING)
        self.assertIsNone(IntelTask.objects.get(assignee=self.bob).assignee_org)

        self.template.refresh_from_db()
        self.assertEqual(self.template.last_run_at, run_at)

    def test_snapshot_is_not_rewritten_when_user_moves(self):
        create_tasks_from_template(self.template, run_at=local(2024, 3, 1, 9, 0))
        self.alice.department = None
        self.alice.save()

        task = IntelTask.objects.get(assignee=self.alice)
        self.assertEqual(task.assignee_dept, self.dept)

    def test_string_override_ids_keep_the_snapshot(self):
        result = create_tasks_from_template(
            self.template,
            run_at=local(2024, 3, 1, 9, 0),
            assignee_ids=[str(self.alice.pk), self.alice.pk],
        )

        self.assertEqual(result['count'], 1)
        self.assertEqual(result['assignee_ids'], [self.alice.pk])
        task = IntelTask.objects.get()
        self.assertEqual(task.assignee_org, self.org)
        self.assertEqual(task.assignee_dept, self.dept)

    def test_second_run_for_same_period_creates_nothing(self):
        create_tasks_from_template(self.template, run_at=local(2024, 3, 1, 9, 0))

        result = create_tasks_from_template(self.template, run_at=local(2024, 3, 1, 15, 0))

        self.assertEqual(result['count'], 0)
        self.assertEqual(IntelTask.objects.count(), 2)

    def test_next_period_creates_new_tasks(self):
        create_tasks_from_template(self.template, run_at=local(2024, 3, 1, 9, 0))

        result = create_tasks_from_template(self.template, run_at=local(2024, 3, 2, 9, 0))

        self.assertEqual(result['count'], 2)
        self.assertEqual(IntelTask.objects.count(), 4)

    def test_created_activity_is_logged(self):
        create_tasks_from_template(self.template, run_at=local(2024, 3, 1, 9, 0))

        self.assertEqual(
            TaskActivity.objects.filter(action_type=TaskActivity.ActionType.CREATED).count(), 2
        )

    def test_empty_target_set_writes_nothing(self):
        template = make_template(assignee_mode=Mode.MANUAL)

        result = create_tasks_from_template(template, run_at=local(2024, 3, 1, 9, 0))

        self.assertEqual(result['count'], 0)
        self.assertEqual(IntelTask.objects.count(), 0)
        template.refresh_from_db()
        self.assertIsNone(template.last_run_at)

    def test_commodity_tasks_get_commodity_suffix(self):
        point = make_point('P1', commodities=['CORN', 'WHEAT'])
        allocate(self.alice, point)
        template = make_template(
            name='Port stock',
            assignee_mode=Mode.BY_COLLECTION_POINT,
            collection_point_ids=[point.pk],
        )

        result = create_tasks_from_template(template, run_at=local(2024, 3, 1, 9, 0))

        self.assertEqual(result['count'], 2)
        self.assertEqual(result['point_count'], 1)
        self.assertEqual(
            sorted(IntelTask.objects.values_list('title', flat=True)),
            ['Port stock [2024-03-01] [CORN]', 'Port stock [2024-03-01] [WHEAT]'],
        )


class DistributeTasksTests(TestCase):
    def setUp(self):
        self.alice = make_user('alice@example.com')
        self.bob = make_user('bob@example.com')
        self.operator = make_user('operator@example.com')
        self.template = make_template(name='Weekly report', assignee_ids=[self.alice.pk])

    def test_unknown_template_raises(self):
        with self.assertRaises(TaskTemplate.DoesNotExist):
            distribute_tasks(999999)

    @mock.patch('django.utils.timezone.now')
    def test_distributes_with_message(self, mock_now):
        mock_now.return_value = local(2024, 3, 1, 9, 0)

        result = distribute_tasks(self.template.pk, triggered_by=self.operator)

        self.assertEqual(result['count'], 1)
        self.assertEqual(result['assignee_ids'], [self.alice.pk])
        self.assertEqual(result['message'], 'Distributed 1 task(s)')
        task = IntelTask.objects.get()
        self.assertEqual(task.created_by, self.operator)

    def test_assignee_override_and_deadline_override(self):
        deadline = local(2024, 3, 5, 17, 0)

        result = distribute_tasks(
            self.template.pk,
            assignee_ids=[self.bob.pk],
            override_deadline=deadline,
        )

        self.assertEqual(result['assignee_ids'], [self.bob.pk])
        task = IntelTask.objects.get()
        self.assertEqual(task.assignee, self.bob)
        self.assertEqual(task.deadline, deadline)
        self.assertEqual(task.due_at, deadline)
        self.assertEqual(task.period_key, '2024-03-05')

    def test_point_type_template_runs_batch(self):
        point = make_point('M1', type=CollectionPoint.PointType.MARKET)
        allocate(self.bob, point)
        self.template.target_point_types = [CollectionPoint.PointType.MARKET]
        self.template.save()

        result = distribute_tasks(self.template.pk)

        self.assertEqual(result['count'], 1)
        self.assertEqual(result['assignee_ids'], [])
        self.assertEqual(result['point_count'], 1)
        self.assertEqual(IntelTask.objects.get().assignee, self.bob)


class ExecuteByPointTypeTests(TestCase):
    def setUp(self):
        self.alice = make_user('alice@example.com')
        self.bob = make_user('bob@example.com')

    def test_requires_point_type(self):
        template = make_template()

        with self.assertRaises(ValidationError):
            execute_template_by_point_type(template.pk)

    def test_no_points_of_type(self):
        template = make_template(target_point_types=[CollectionPoint.PointType.REGION])

        result = execute_template_by_point_type(template.pk)

        self.assertEqual(result['count'], 0)
        self.assertEqual(result['message'], 'No active collection points of type REGION')

    def test_batch_over_points(self):
        first = make_point('E1', type=CollectionPoint.PointType.ENTERPRISE, commodities=['CORN'])
        second = make_point('E2', type=CollectionPoint.PointType.ENTERPRISE)
        allocate(self.alice, first)
        allocate(self.bob, second)
        template = make_template(target_point_types=[CollectionPoint.PointType.ENTERPRISE])

        result = execute_template_by_point_type(template.pk)

        self.assertEqual(result['count'], 2)
        self.assertEqual(result['point_count'], 2)
        self.assertEqual(result['message'], 'Generated 2 task(s) for 2 collection point(s)')
        self.assertEqual(
            set(IntelTask.objects.values_list('collection_point_id', 'commodity')),
            {(first.pk, 'CORN'), (second.pk, None)},
        )


class PreviewDistributionTests(TestCase):
    def setUp(self):
        self.org = Organization.objects.create(name='Headquarters', code='HQ')
        self.alice = make_user('alice@example.com', organization=self.org)
        self.bob = make_user('bob@example.com')

    def test_point_preview(self):
        port = make_point('P1', commodities=['CORN', 'WHEAT', 'SOY'])
        empty = make_point('P2')
        allocate(self.alice, port)
        allocate(self.bob, port, commodity='CORN')
        template = make_template(target_point_types=[CollectionPoint.PointType.PORT])

        preview = preview_distribution(template.pk)

        self.assertEqual(preview['total_tasks'], 4)
        self.assertEqual(preview['total_assignees'], 2)
        self.assertEqual(
            preview['unassigned_points'],
            [{'id': empty.pk, 'name': empty.name, 'type': empty.type}],
        )
        alice_entry = preview['assignees'][0]
        self.assertEqual(alice_entry['user_id'], self.alice.pk)
        self.assertEqual(alice_entry['organization_name'], 'Headquarters')
        self.assertEqual(alice_entry['collection_points'][0]['commodity'], 'All')
        self.assertEqual(alice_entry['task_count'], 3)
        self.assertEqual(IntelTask.objects.count(), 0)

    def test_standard_preview_is_one_task_per_assignee(self):
        template = make_template(assignee_ids=[self.alice.pk, self.bob.pk])

        preview = preview_distribution(template.pk)

        self.assertEqual(preview['total_tasks'], 2)
        self.assertEqual([a['user_id'] for a in preview['assignees']], [self.alice.pk, self.bob.pk])
        self.assertEqual(preview['unassigned_points'], [])
