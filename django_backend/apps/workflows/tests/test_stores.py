"""
Tests for the engine state stores.
"""

from datetime import datetime, timedelta, timezone as dt_timezone
from unittest.mock import patch

import fakeredis
from django.test import SimpleTestCase, override_settings
from freezegun import freeze_time

from apps.notifications.services import NotificationService
from apps.tasks.choices import TaskPriority, TaskStatus
from apps.tasks.scheduling import ScheduleRequest, TaskSchedulingEngine, UserWorkload
from apps.tasks.templates import TaskTemplateEngine
from apps.workflows.automation import TaskAutomationEngine
from apps.workflows.rules import BusinessRuleEngine
from apps.workflows.stores import (
    DelayedActionQueue,
    InMemoryHistoryStore,
    InMemoryStore,
    RedisDelayedActionQueue,
    RedisHistoryStore,
    RedisStore,
    build_delayed_queue,
    build_history_store,
    build_keyed_store,
)


NOW = datetime(2024, 3, 1, 9, 0, tzinfo=dt_timezone.utc)


class BaseRedisTestCase(SimpleTestCase):

    def setUp(self):
        self.server = fakeredis.FakeServer()

    def redis_client(self):
        return fakeredis.FakeRedis(server=self.server)


class InMemoryStoreTestCase(SimpleTestCase):

    def test_keeps_insertion_order_across_updates(self):
        store = InMemoryStore([UserWorkload(user_id='a'), UserWorkload(user_id='b')])
        store.save(UserWorkload(user_id='a', total_hours=9))

        self.assertEqual([record.id for record in store.all()], ['a', 'b'])
        self.assertEqual(store.get('a').total_hours, 9)
        self.assertTrue(store.delete('a'))
        self.assertFalse(store.delete('a'))
        self.assertEqual(len(store), 1)

    def test_history_is_bounded(self):
        history = InMemoryHistoryStore(max_entries=2)
        for entry in ('first', 'second', 'third'):
            history.append(entry)

        self.assertEqual(history.entries(), ['second', 'third'])

    def test_queue_releases_due_jobs_in_fire_order(self):
        queue = DelayedActionQueue()
        queue.push(NOW + timedelta(hours=2), 'later')
        queue.push(NOW + timedelta(hours=1), 'first')
        queue.push(NOW + timedelta(hours=1), 'second')

        self.assertEqual([job.payload for job in queue.pop_due(NOW + timedelta(hours=1))], ['first', 'second'])
        self.assertEqual(len(queue), 1)


class RedisStoreTestCase(BaseRedisTestCase):

    def test_records_are_visible_to_every_client(self):
        writer = RedisStore(self.redis_client(), 'candidates')
        reader = RedisStore(self.redis_client(), 'candidates')

        writer.save(UserWorkload(user_id='a'))
        writer.save(UserWorkload(user_id='b'))
        writer.save(UserWorkload(user_id='a', total_hours=9))

        self.assertEqual([record.id for record in reader.all()], ['a', 'b'])
        self.assertEqual(reader.get('a').total_hours, 9)
        self.assertIn('b', reader)
        self.assertEqual(reader.count(), 2)
        self.assertIsNone(reader.get('missing'))

    def test_delete(self):
        store = RedisStore(self.redis_client(), 'candidates')
        store.save(UserWorkload(user_id='a'))

        self.assertTrue(store.delete('a'))
        self.assertFalse(store.delete('a'))
        self.assertEqual(store.all(), [])

    def test_namespaces_are_separate(self):
        RedisStore(self.redis_client(), 'one').save(UserWorkload(user_id='a'))

        self.assertEqual(RedisStore(self.redis_client(), 'two').all(), [])

    def test_history_is_trimmed(self):
        history = RedisHistoryStore(self.redis_client(), 'audit', max_entries=2)
        for entry in ('first', 'second', 'third'):
            history.append(entry)

        self.assertEqual(RedisHistoryStore(self.redis_client(), 'audit').entries(), ['second', 'third'])
        history.clear()
        self.assertEqual(len(history), 0)


class RedisDelayedActionQueueTestCase(BaseRedisTestCase):

    def test_due_jobs_come_back_in_fire_then_push_order(self):
        queue = RedisDelayedActionQueue(self.redis_client(), 'jobs')
        queue.push(NOW + timedelta(hours=2), 'later')
        queue.push(NOW + timedelta(hours=1), 'first')
        queue.push(NOW + timedelta(hours=1), 'second')

        self.assertEqual([job.payload for job in queue.peek_all()], ['first', 'second', 'later'])
        self.assertEqual([job.payload for job in queue.pop_due(NOW + timedelta(hours=1))], ['first', 'second'])
        self.assertEqual(len(queue), 1)

    def test_a_due_job_is_claimed_once(self):
        producer = RedisDelayedActionQueue(self.redis_client(), 'jobs')
        producer.push(NOW, 'follow up')

        first = RedisDelayedActionQueue(self.redis_client(), 'jobs').pop_due(NOW)
        second = RedisDelayedActionQueue(self.redis_client(), 'jobs').pop_due(NOW)

        self.assertEqual([job.payload for job in first], ['follow up'])
        self.assertEqual(second, [])

    def test_remove_and_clear(self):
        queue = RedisDelayedActionQueue(self.redis_client(), 'jobs')
        job = queue.push(NOW, 'cancel me')
        queue.push(NOW, 'keep me')

        self.assertTrue(queue.remove(job.id))
        self.assertFalse(queue.remove(job.id))
        self.assertEqual([job.payload for job in queue.peek_all()], ['keep me'])

        queue.clear()
        self.assertEqual(len(queue), 0)


class StoreFactoryTestCase(BaseRedisTestCase):

    def test_memory_backend_by_default(self):
        self.assertIsInstance(build_keyed_store('tasks'), InMemoryStore)
        self.assertIsInstance(build_history_store('tasks'), InMemoryHistoryStore)
        self.assertIsInstance(build_delayed_queue('jobs'), DelayedActionQueue)

    @override_settings(CASE_WORKFLOW={'STATE_BACKEND': 'redis'})
    def test_redis_backend(self):
        with patch('apps.workflows.stores.get_state_client', return_value=self.redis_client()):
            self.assertIsInstance(build_keyed_store('tasks'), RedisStore)
            self.assertIsInstance(build_history_store('tasks'), RedisHistoryStore)
            self.assertIsInstance(build_delayed_queue('jobs'), RedisDelayedActionQueue)


@freeze_time(NOW)
class SharedStateTestCase(BaseRedisTestCase):
    """One engine per client stands in for the web process and a worker."""

    def automation_engine(self):
        notifications = NotificationService()
        return TaskAutomationEngine(
            template_engine=TaskTemplateEngine(),
            rule_engine=BusinessRuleEngine(notifications=notifications),
            delayed_queue=RedisDelayedActionQueue(self.redis_client(), 'automation:delayed'),
            history_store=RedisHistoryStore(self.redis_client(), 'automation'),
            notifications=notifications,
        )

    def scheduling_engine(self):
        client = self.redis_client()
        return TaskSchedulingEngine(
            schedule_store=RedisStore(client, 'scheduling:tasks'),
            history_store=RedisHistoryStore(client, 'scheduling'),
            calendar_store=RedisStore(client, 'scheduling:calendar'),
            workload_store=RedisStore(client, 'scheduling:workloads'),
        )

    def test_worker_drains_automation_queued_by_web_process(self):
        web = self.automation_engine()
        worker = self.automation_engine()

        web.process_task_status_change(
            'task_3', TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, 'case_1', 'user1',
            {'taskPriority': TaskPriority.URGENT, 'createdBy': 'user5'},
        )
        self.assertEqual(len(worker.get_pending_automations()), 1)

        results = worker.process_pending_automations(NOW + timedelta(hours=25))

        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].created_tasks[0].metadata['parentTaskId'], 'task_3')
        self.assertEqual(web.get_pending_automations(), [])
        self.assertEqual(web.process_pending_automations(NOW + timedelta(hours=25)), [])
        self.assertTrue(web.get_automation_history(limit=1)[0].delayed)

    def test_worker_sees_schedules_made_by_web_process(self):
        web = self.scheduling_engine()
        worker = self.scheduling_engine()

        web.schedule_task(ScheduleRequest(
            task_id='task_1', case_id='case_1', title='Draft motion',
            scheduled_time=NOW + timedelta(hours=1), assigned_to='attorney_1', assigned_by='admin_1',
            priority=TaskPriority.HIGH,
        ))
        worker.update_task_status('task_1', TaskStatus.COMPLETED)

        self.assertEqual(web.get_scheduled_task('task_1').status, TaskStatus.COMPLETED)
        self.assertEqual(len(web.get_calendar_events()), 1)
        self.assertEqual(web.get_user_workload('attorney_1').active_tasks, 0)
        self.assertEqual(web.get_user_workload('attorney_1').total_tasks, 1)
        self.assertEqual(
            [entry.action for entry in web.get_schedule_history()],
            ['status_changed', 'task_scheduled']
        )
