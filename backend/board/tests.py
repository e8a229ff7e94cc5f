"""
Tests for Threadboard

Focus areas:
1. Like integrity (one like per identity, no lost increments)
2. Comment tree depth limit and delete cascade
3. Live update fan-out (broker + event streams)
4. HTTP API end to end
"""

import asyncio
import threading
from contextlib import suppress
from unittest.mock import patch

from django.db import connection
from django.test import RequestFactory, SimpleTestCase, TestCase, override_settings
from django.test.utils import CaptureQueriesContext
from rest_framework.test import APITestCase

from . import services
from .apps import get_broker
from .broker import EventBroker, EventKind
from .comments import (
    create_comment,
    update_comment,
    delete_comment,
    list_top_level,
    list_replies,
    count_all,
)
from .exceptions import AlreadyLiked, DepthLimitExceeded, Forbidden, NotFound, NotLiked
from .identity import get_request_identity, resolve_identity
from .models import Post, Comment, Like, MAX_COMMENT_DEPTH
from .queries import get_posts_with_comment_index, list_posts
from .serializers import PostSerializer
from .services import (
    create_post,
    update_post,
    delete_post,
    like_post,
    unlike_post,
    like_comment,
    unlike_comment,
    toggle_like,
)
from .streams import KEEPALIVE_FRAME, event_source, format_event


def collect(loop, subscription):
    """Let the loop run pending deliveries, then return what arrived."""
    async def _drain():
        await asyncio.sleep(0)
        return subscription.drain()
    return loop.run_until_complete(_drain())


def liked_by(target):
    return [like.identity for like in target.likes.all()]


class BrokerMixin:
    """A private broker and event loop per test."""

    def setUp(self):
        super().setUp()
        self.loop = asyncio.new_event_loop()
        self.addCleanup(self.loop.close)
        self.broker = EventBroker()

    def subscribe(self, kind):
        subscription = self.broker.subscribe(kind, loop=self.loop)
        self.addCleanup(subscription.close)
        return subscription


class IdentityTestCase(SimpleTestCase):

    def test_peer_address_wins(self):
        identity = resolve_identity('9.9.9.9', '1.1.1.1, 2.2.2.2', '3.3.3.3')
        self.assertEqual(identity, '9.9.9.9')

    def test_first_forwarded_entry_without_peer(self):
        identity = resolve_identity(None, ' 1.1.1.1 , 2.2.2.2', '3.3.3.3')
        self.assertEqual(identity, '1.1.1.1')

    def test_real_ip_header(self):
        self.assertEqual(resolve_identity('', '', '3.3.3.3'), '3.3.3.3')

    def test_unknown_fallback(self):
        self.assertEqual(resolve_identity(), 'unknown')
        self.assertEqual(resolve_identity('  ', ' , ', ''), 'unknown')

    def test_request_metadata(self):
        request = RequestFactory().get(
            '/', REMOTE_ADDR='', HTTP_X_FORWARDED_FOR='5.5.5.5, 6.6.6.6'
        )
        self.assertEqual(get_request_identity(request), '5.5.5.5')


class EventBrokerTestCase(BrokerMixin, SimpleTestCase):
    """
    Fan-out semantics:
    1. Every subscriber of a kind gets every payload of that kind
    2. Per-subscriber publish order is preserved
    3. Nothing is replayed to late subscribers
    """

    def test_fan_out_by_kind(self):
        first = self.subscribe(EventKind.POST_LIKED)
        second = self.subscribe(EventKind.POST_LIKED)
        other = self.subscribe(EventKind.POST_CREATED)

        delivered = self.broker.publish(EventKind.POST_LIKED, {'id': 1})

        self.assertEqual(delivered, 2)
        self.assertEqual(collect(self.loop, first), [{'id': 1}])
        self.assertEqual(collect(self.loop, second), [{'id': 1}])
        self.assertEqual(collect(self.loop, other), [])

    def test_publish_order_preserved(self):
        subscription = self.subscribe(EventKind.COMMENT_CREATED)
        for i in range(5):
            self.broker.publish(EventKind.COMMENT_CREATED, i)

        self.assertEqual(collect(self.loop, subscription), [0, 1, 2, 3, 4])

    def test_late_subscriber_misses_earlier_events(self):
        self.broker.publish(EventKind.POST_LIKED, 'before')
        subscription = self.subscribe(EventKind.POST_LIKED)
        self.broker.publish(EventKind.POST_LIKED, 'after')

        self.assertEqual(collect(self.loop, subscription), ['after'])

    def test_closed_subscription_gets_nothing(self):
        subscription = self.subscribe(EventKind.POST_DELETED)
        subscription.close()

        self.assertEqual(self.broker.publish(EventKind.POST_DELETED, 'x'), 0)
        self.assertEqual(self.broker.subscriber_count(EventKind.POST_DELETED), 0)
        self.assertEqual(collect(self.loop, subscription), [])

    def test_iteration_ends_after_close(self):
        subscription = self.subscribe(EventKind.POST_UPDATED)
        self.broker.publish(EventKind.POST_UPDATED, 'a')
        self.broker.publish(EventKind.POST_UPDATED, 'b')
        subscription.close()

        async def consume():
            return [payload async for payload in subscription]

        self.assertEqual(self.loop.run_until_complete(consume()), ['a', 'b'])

    def test_publish_from_worker_thread(self):
        subscription = self.subscribe(EventKind.COMMENT_LIKED)

        def worker():
            self.broker.publish(EventKind.COMMENT_LIKED, 'x')
            self.broker.publish(EventKind.COMMENT_LIKED, 'y')

        thread = threading.Thread(target=worker)
        thread.start()
        thread.join()

        self.assertEqual(collect(self.loop, subscription), ['x', 'y'])

    def test_next_times_out_when_idle(self):
        subscription = self.subscribe(EventKind.POST_CREATED)
        with self.assertRaises(asyncio.TimeoutError):
            self.loop.run_until_complete(subscription.next(timeout=0.01))

    def test_subscriber_on_closed_loop_is_dropped(self):
        other_loop = asyncio.new_event_loop()
        self.broker.subscribe(EventKind.POST_CREATED, loop=other_loop)
        other_loop.close()

        self.assertEqual(self.broker.publish(EventKind.POST_CREATED, 'x'), 0)
        self.assertEqual(self.broker.subscriber_count(EventKind.POST_CREATED), 0)

    def test_slugs(self):
        self.assertEqual(EventKind.POST_LIKED.slug, 'post-liked')
        self.assertIs(EventKind.from_slug('comment-deleted'), EventKind.COMMENT_DELETED)
        with self.assertRaises(ValueError):
            EventKind.from_slug('post-exploded')


class EventStreamTestCase(BrokerMixin, SimpleTestCase):

    def test_format_event(self):
        self.assertEqual(
            format_event('PostLiked', {'id': 1, 'liked_by': ['1.1.1.1']}),
            'event: PostLiked\ndata: {"id":1,"liked_by":["1.1.1.1"]}\n\n'
        )

    def test_stream_frames(self):
        subscription = self.subscribe(EventKind.POST_CREATED)
        stream = event_source(subscription, keepalive=5)

        ready = self.loop.run_until_complete(stream.__anext__())
        self.assertEqual(ready, 'event: ready\ndata: {"kind":"PostCreated"}\n\n')

        self.broker.publish(EventKind.POST_CREATED, {'id': 7})
        frame = self.loop.run_until_complete(stream.__anext__())
        self.assertEqual(frame, 'event: PostCreated\ndata: {"id":7}\n\n')

        self.loop.run_until_complete(stream.aclose())
        self.assertTrue(subscription.closed)
        self.assertEqual(self.broker.subscriber_count(EventKind.POST_CREATED), 0)

    def test_keepalive_when_quiet(self):
        subscription = self.subscribe(EventKind.POST_LIKED)
        stream = event_source(subscription, keepalive=0.01)

        self.loop.run_until_complete(stream.__anext__())
        self.assertEqual(self.loop.run_until_complete(stream.__anext__()), KEEPALIVE_FRAME)
        self.loop.run_until_complete(stream.aclose())

    def test_stream_ends_when_subscription_closes(self):
        subscription = self.subscribe(EventKind.POST_LIKED)
        stream = event_source(subscription, keepalive=5)

        self.loop.run_until_complete(stream.__anext__())
        subscription.close()
        with self.assertRaises(StopAsyncIteration):
            self.loop.run_until_complete(stream.__anext__())

    def test_disconnect_closes_subscription(self):
        subscription = self.subscribe(EventKind.POST_LIKED)

        async def read_frames():
            async for _ in event_source(subscription, keepalive=5):
                pass

        async def connect_then_drop():
            # the ASGI handler cancels the response iterator on disconnect
            reader = asyncio.ensure_future(read_frames())
            await asyncio.sleep(0.01)
            reader.cancel()
            with suppress(asyncio.CancelledError):
                await reader

        self.loop.run_until_complete(connect_then_drop())

        self.assertTrue(subscription.closed)
        self.assertEqual(self.broker.subscriber_count(EventKind.POST_LIKED), 0)
        self.assertEqual(self.broker.publish(EventKind.POST_LIKED, {'id': 1}), 0)


class EventStreamEndpointTestCase(SimpleTestCase):
    """GET /api/events/<kind>/ through the async request handler."""

    async def test_stream_response(self):
        broker = EventBroker()
        with patch('board.streams.get_broker', return_value=broker):
            response = await self.async_client.get('/api/events/post-liked/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['Content-Type'], 'text/event-stream')
        self.assertEqual(response['Cache-Control'], 'no-cache')
        self.assertEqual(response['X-Accel-Buffering'], 'no')
        self.assertEqual(broker.subscriber_count(EventKind.POST_LIKED), 1)

        frames = aiter(response.streaming_content)
        self.assertEqual(await anext(frames), b'event: ready\ndata: {"kind":"PostLiked"}\n\n')

        broker.publish(EventKind.POST_LIKED, {'id': 3})
        self.assertEqual(await anext(frames), b'event: PostLiked\ndata: {"id":3}\n\n')
        await frames.aclose()


class LikeEngineTestCase(BrokerMixin, TestCase):
    """
    These tests verify that:
    1. like_count == size of liked-by after every operation
    2. Duplicate likes and phantom unlikes are rejected
    3. Concurrent likes from different identities are not lost
    """

    def setUp(self):
        super().setUp()
        self.post = Post.objects.create(title='Test', text='Body', created_by='9.9.9.9')
        self.comment = Comment.objects.create(post=self.post, text='Comment', created_by='8.8.8.8')

    def assertLikesConsistent(self, target):
        target.refresh_from_db()
        self.assertEqual(target.like_count, target.likes.count())

    def test_like_records_identity(self):
        post = like_post('1.1.1.1', self.post.id, broker=self.broker)

        self.assertEqual(post.like_count, 1)
        self.assertEqual(liked_by(post), ['1.1.1.1'])
        self.assertLikesConsistent(self.post)

    def test_cannot_like_twice(self):
        like_post('1.1.1.1', self.post.id, broker=self.broker)

        with self.assertRaises(AlreadyLiked):
            like_post('1.1.1.1', self.post.id, broker=self.broker)

        self.post.refresh_from_db()
        self.assertEqual(self.post.like_count, 1)
        self.assertEqual(Like.objects.filter(identity='1.1.1.1').count(), 1)

    def test_unlike_never_liked(self):
        with self.assertRaises(NotLiked):
            unlike_post('1.1.1.1', self.post.id, broker=self.broker)

        self.post.refresh_from_db()
        self.assertEqual(self.post.like_count, 0)

    def test_like_unlike_like(self):
        like_post('1.1.1.1', self.post.id, broker=self.broker)
        post = unlike_post('1.1.1.1', self.post.id, broker=self.broker)
        self.assertEqual(post.like_count, 0)
        self.assertEqual(liked_by(post), [])

        post = like_post('1.1.1.1', self.post.id, broker=self.broker)
        self.assertEqual(post.like_count, 1)

    def test_missing_target(self):
        with self.assertRaises(NotFound):
            like_post('1.1.1.1', 999999, broker=self.broker)
        with self.assertRaises(NotFound):
            unlike_comment('1.1.1.1', 999999, broker=self.broker)

    def test_counter_matches_liked_by_after_mixed_sequence(self):
        for identity in ['a', 'b', 'c', 'd', 'e']:
            like_comment(identity, self.comment.id, broker=self.broker)
        unlike_comment('b', self.comment.id, broker=self.broker)
        comment = unlike_comment('d', self.comment.id, broker=self.broker)

        self.assertEqual(comment.like_count, 3)
        self.assertEqual(sorted(liked_by(comment)), ['a', 'c', 'e'])
        self.assertLikesConsistent(self.comment)

    def test_interleaved_likes_do_not_lose_increments(self):
        """
        Another identity's like lands between our fetch and our write.

        With a read-modify-write of the fetched instance the count would end
        at 1; atomic updates must give 2.
        """
        real_get_target = services._get_target
        interleaved = []

        def get_target_then_interleave(kind, target_id):
            target = real_get_target(kind, target_id)
            if not interleaved:
                interleaved.append(target)
                services.like(kind, target_id, '2.2.2.2', broker=self.broker)
            return target

        with patch('board.services._get_target', side_effect=get_target_then_interleave):
            post = services.like('post', self.post.id, '1.1.1.1', broker=self.broker)

        self.assertEqual(interleaved[0].like_count, 0)  # the stale read
        self.assertEqual(post.like_count, 2)
        self.assertEqual(sorted(liked_by(post)), ['1.1.1.1', '2.2.2.2'])
        self.assertLikesConsistent(self.post)

    def test_post_and_comment_likes_are_separate(self):
        like_post('1.1.1.1', self.post.id, broker=self.broker)
        comment = like_comment('1.1.1.1', self.comment.id, broker=self.broker)

        self.assertEqual(comment.like_count, 1)
        self.assertLikesConsistent(self.post)
        self.assertLikesConsistent(self.comment)

    def test_toggle(self):
        action, post = toggle_like('post', self.post.id, '1.1.1.1', broker=self.broker)
        self.assertEqual((action, post.like_count), ('liked', 1))

        action, post = toggle_like('post', self.post.id, '1.1.1.1', broker=self.broker)
        self.assertEqual((action, post.like_count), ('unliked', 0))

    def test_like_publishes_updated_post(self):
        subscription = self.subscribe(EventKind.POST_LIKED)

        like_post('1.1.1.1', self.post.id, broker=self.broker)

        payloads = collect(self.loop, subscription)
        self.assertEqual(len(payloads), 1)
        self.assertEqual(payloads[0]['id'], self.post.id)
        self.assertEqual(payloads[0]['like_count'], 1)
        self.assertEqual(payloads[0]['liked_by'], ['1.1.1.1'])

    def test_unlike_publishes_liked_event(self):
        subscription = self.subscribe(EventKind.COMMENT_LIKED)

        like_comment('1.1.1.1', self.comment.id, broker=self.broker)
        unlike_comment('1.1.1.1', self.comment.id, broker=self.broker)

        counts = [p['like_count'] for p in collect(self.loop, subscription)]
        self.assertEqual(counts, [1, 0])

    def test_subscriber_after_unlike_sees_nothing_earlier(self):
        like_post('1.1.1.1', self.post.id, broker=self.broker)
        unlike_post('1.1.1.1', self.post.id, broker=self.broker)

        subscription = self.subscribe(EventKind.POST_LIKED)
        self.assertEqual(collect(self.loop, subscription), [])

    def test_rejected_like_publishes_nothing(self):
        like_post('1.1.1.1', self.post.id, broker=self.broker)
        subscription = self.subscribe(EventKind.POST_LIKED)

        with self.assertRaises(AlreadyLiked):
            like_post('1.1.1.1', self.post.id, broker=self.broker)

        self.assertEqual(collect(self.loop, subscription), [])


class CommentTreeTestCase(BrokerMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.post = Post.objects.create(title='Test', created_by='9.9.9.9')

    def comment(self, text, parent=None, identity='1.1.1.1', post=None):
        return create_comment(
            (post or self.post).id,
            text,
            identity,
            parent_id=parent.id if parent else None,
            broker=self.broker,
        )

    def test_depth(self):
        top = self.comment('top')
        reply = self.comment('reply', parent=top)

        self.assertEqual(top.depth, 0)
        self.assertIsNone(top.parent_id)
        self.assertEqual(reply.depth, 1)
        self.assertEqual(reply.parent_id, top.id)

    def test_depth_limit(self):
        comment = self.comment('depth 0')
        for depth in range(1, MAX_COMMENT_DEPTH + 1):
            comment = self.comment(f'depth {depth}', parent=comment)
            self.assertEqual(comment.depth, depth)

        self.assertEqual(comment.depth, 5)
        with self.assertRaises(DepthLimitExceeded):
            self.comment('too deep', parent=comment)
        self.assertEqual(Comment.objects.count(), MAX_COMMENT_DEPTH + 1)

    def test_missing_parent(self):
        with self.assertRaises(NotFound):
            create_comment(self.post.id, 'orphan', '1.1.1.1', parent_id=999999, broker=self.broker)

    def test_parent_on_other_post(self):
        other_post = Post.objects.create(title='Other')
        parent = self.comment('elsewhere', post=other_post)

        with self.assertRaises(NotFound):
            self.comment('reply', parent=parent)

    def test_create_publishes_event(self):
        subscription = self.subscribe(EventKind.COMMENT_CREATED)
        comment = self.comment('hello')

        payloads = collect(self.loop, subscription)
        self.assertEqual([p['id'] for p in payloads], [comment.id])
        self.assertEqual(payloads[0]['post_id'], self.post.id)
        self.assertEqual(payloads[0]['depth'], 0)

    def test_update_by_creator(self):
        subscription = self.subscribe(EventKind.COMMENT_UPDATED)
        comment = self.comment('before')

        updated = update_comment(comment.id, 'after', '1.1.1.1', broker=self.broker)

        self.assertEqual(updated.text, 'after')
        self.assertEqual([p['text'] for p in collect(self.loop, subscription)], ['after'])

    def test_update_by_someone_else(self):
        comment = self.comment('before')

        with self.assertRaises(Forbidden):
            update_comment(comment.id, 'after', '6.6.6.6', broker=self.broker)

        comment.refresh_from_db()
        self.assertEqual(comment.text, 'before')

    def test_update_missing(self):
        with self.assertRaises(NotFound):
            update_comment(999999, 'text', '1.1.1.1', broker=self.broker)

    def test_delete_removes_direct_replies_only(self):
        root = self.comment('root')
        child_a = self.comment('child a', parent=root)
        child_b = self.comment('child b', parent=root)
        grandchild = self.comment('grandchild', parent=child_a)
        sibling = self.comment('sibling')

        delete_comment(root.id, '1.1.1.1', broker=self.broker)

        remaining = set(Comment.objects.values_list('id', flat=True))
        self.assertEqual(remaining, {grandchild.id, sibling.id})
        self.assertNotIn(child_b.id, remaining)
        # still points at the deleted child
        grandchild.refresh_from_db()
        self.assertEqual(grandchild.parent_id, child_a.id)

    @override_settings(BOARD_COMMENT_DELETE_CASCADE='subtree')
    def test_delete_subtree_mode(self):
        root = self.comment('root')
        child = self.comment('child', parent=root)
        self.comment('grandchild', parent=child)
        sibling = self.comment('sibling')

        delete_comment(root.id, '1.1.1.1', broker=self.broker)

        self.assertEqual(list(Comment.objects.values_list('id', flat=True)), [sibling.id])

    def test_delete_by_someone_else(self):
        root = self.comment('root')
        self.comment('child', parent=root)

        with self.assertRaises(Forbidden):
            delete_comment(root.id, '6.6.6.6', broker=self.broker)

        self.assertEqual(Comment.objects.count(), 2)

    def test_delete_publishes_prior_state(self):
        root = self.comment('root')
        like_comment('2.2.2.2', root.id, broker=self.broker)
        subscription = self.subscribe(EventKind.COMMENT_DELETED)

        prior_state = delete_comment(root.id, '1.1.1.1', broker=self.broker)

        self.assertEqual(prior_state['text'], 'root')
        self.assertEqual(prior_state['like_count'], 1)
        self.assertEqual(collect(self.loop, subscription), [prior_state])
        self.assertFalse(Like.objects.filter(object_id=root.id).exists())

    def test_listing_most_recent_first(self):
        first = self.comment('first')
        second = self.comment('second')
        reply_a = self.comment('reply a', parent=first)
        reply_b = self.comment('reply b', parent=first)

        self.assertEqual([c.id for c in list_top_level(self.post.id)], [second.id, first.id])
        self.assertEqual([c.id for c in list_replies(first.id)], [reply_b.id, reply_a.id])

    def test_count_all_depths(self):
        top = self.comment('top')
        reply = self.comment('reply', parent=top)
        self.comment('reply to reply', parent=reply)
        self.comment('other post', post=Post.objects.create(title='Other'))

        self.assertEqual(count_all(self.post.id), 3)

    def test_post_is_not_checked(self):
        comment = create_comment(999999, 'dangling', '1.1.1.1', broker=self.broker)
        self.assertEqual(comment.post_id, 999999)


class PostServiceTestCase(BrokerMixin, TestCase):

    def test_create_defaults(self):
        subscription = self.subscribe(EventKind.POST_CREATED)
        post = create_post('', broker=self.broker, title='t')

        self.assertEqual(post.created_by, 'unknown')
        self.assertEqual((post.text, post.image, post.like_count), ('', '', 0))
        self.assertEqual([p['id'] for p in collect(self.loop, subscription)], [post.id])

    def test_update_only_given_fields(self):
        post = create_post('1.1.1.1', broker=self.broker, title='t', text='b', image='img')
        subscription = self.subscribe(EventKind.POST_UPDATED)

        updated = update_post(post.id, '1.1.1.1', broker=self.broker, title='new')

        self.assertEqual((updated.title, updated.text, updated.image), ('new', 'b', 'img'))
        self.assertEqual([p['title'] for p in collect(self.loop, subscription)], ['new'])

    def test_update_by_someone_else(self):
        post = create_post('1.1.1.1', broker=self.broker, title='t')

        with self.assertRaises(Forbidden):
            update_post(post.id, '6.6.6.6', broker=self.broker, title='hijacked')

        post.refresh_from_db()
        self.assertEqual(post.title, 't')

    def test_delete_by_someone_else(self):
        post = create_post('1.1.1.1', broker=self.broker, title='t')

        with self.assertRaises(Forbidden):
            delete_post(post.id, '6.6.6.6', broker=self.broker)
        self.assertTrue(Post.objects.filter(id=post.id).exists())

    def test_delete_keeps_comments_by_default(self):
        post = create_post('1.1.1.1', broker=self.broker, title='t')
        comment = create_comment(post.id, 'c', '2.2.2.2', broker=self.broker)
        like_post('3.3.3.3', post.id, broker=self.broker)
        subscription = self.subscribe(EventKind.POST_DELETED)

        prior_state = delete_post(post.id, '1.1.1.1', broker=self.broker)

        self.assertFalse(Post.objects.filter(id=post.id).exists())
        self.assertFalse(Like.objects.filter(identity='3.3.3.3').exists())
        self.assertTrue(Comment.objects.filter(id=comment.id).exists())
        self.assertEqual(prior_state['comment_count'], 1)
        self.assertEqual(collect(self.loop, subscription), [prior_state])

    @override_settings(BOARD_POST_DELETE_CASCADE=True)
    def test_delete_cascade_setting(self):
        post = create_post('1.1.1.1', broker=self.broker, title='t')
        top = create_comment(post.id, 'c', '2.2.2.2', broker=self.broker)
        create_comment(post.id, 'r', '2.2.2.2', parent_id=top.id, broker=self.broker)

        delete_post(post.id, '1.1.1.1', broker=self.broker)

        self.assertEqual(Comment.objects.count(), 0)

    def test_listing(self):
        older = create_post('1.1.1.1', broker=self.broker, title='older')
        newer = create_post('2.2.2.2', broker=self.broker, title='newer')

        self.assertEqual([p.id for p in list_posts()], [newer.id, older.id])
        self.assertEqual([p.id for p in list_posts(created_by='1.1.1.1')], [older.id])


class QueryCountTestCase(TestCase):
    """
    Listing posts with their comment trees must NOT cost a query per
    post or per comment.
    """

    def render_feed(self):
        with CaptureQueriesContext(connection) as context:
            posts, index = get_posts_with_comment_index()
            PostSerializer(posts, many=True, context={'comment_index': index}).data
        return len(context)

    def add_thread(self, replies):
        post = Post.objects.create(title='Thread')
        parent = Comment.objects.create(post=post, text='top')
        for i in range(replies):
            parent = Comment.objects.create(
                post=post, parent=parent, text=f'reply {i}', depth=parent.depth + 1
            )
            Like.objects.create(identity=f'{i}', content_object=parent)

    def test_query_count_does_not_grow(self):
        self.add_thread(replies=1)
        self.render_feed()  # warm the ContentType cache
        small = self.render_feed()

        for _ in range(5):
            self.add_thread(replies=4)
        large = self.render_feed()

        self.assertEqual(small, large)
        self.assertLessEqual(large, 4)


class BoardAPITestCase(APITestCase):
    """End to end through the HTTP API."""

    def setUp(self):
        self.loop = asyncio.new_event_loop()
        self.addCleanup(self.loop.close)

    def as_identity(self, identity):
        return {'REMOTE_ADDR': identity}

    def test_post_like_and_comment_flow(self):
        response = self.client.post(
            '/api/posts/', {'title': 't', 'text': 'b', 'image': ''},
            format='json', **self.as_identity('9.9.9.9')
        )
        self.assertEqual(response.status_code, 201)
        post_id = response.data['id']
        self.assertEqual(response.data['created_by'], '9.9.9.9')

        response = self.client.get('/api/posts/')
        self.assertEqual([p['id'] for p in response.data], [post_id])
        self.assertEqual(response.data[0]['like_count'], 0)
        self.assertEqual(response.data[0]['liked_by'], [])

        response = self.client.post(f'/api/posts/{post_id}/like/', **self.as_identity('1.1.1.1'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['like_count'], 1)
        self.assertEqual(response.data['liked_by'], ['1.1.1.1'])

        response = self.client.post(f'/api/posts/{post_id}/like/', **self.as_identity('1.1.1.1'))
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data, {'error': 'User has already liked this post'})

        response = self.client.get(f'/api/posts/{post_id}/')
        self.assertEqual(response.data['like_count'], 1)
        self.assertEqual(response.data['liked_by'], ['1.1.1.1'])

        response = self.client.post(
            f'/api/posts/{post_id}/comments/', {'text': 'first!'},
            format='json', **self.as_identity('2.2.2.2')
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data['depth'], 0)
        self.assertIsNone(response.data['parent_id'])
        top_id = response.data['id']

        response = self.client.post(
            f'/api/posts/{post_id}/comments/', {'text': 'reply', 'parent_id': top_id},
            format='json', **self.as_identity('3.3.3.3')
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data['depth'], 1)
        reply_id = response.data['id']

        response = self.client.get('/api/posts/')
        post = response.data[0]
        self.assertEqual(post['comment_count'], 2)
        self.assertEqual([c['id'] for c in post['replies']], [top_id])
        self.assertEqual([c['id'] for c in post['replies'][0]['replies']], [reply_id])

        response = self.client.get(f'/api/comments/{top_id}/replies/')
        self.assertEqual([c['id'] for c in response.data], [reply_id])

        response = self.client.get(f'/api/posts/{post_id}/comments/')
        self.assertEqual([c['id'] for c in response.data], [top_id])

    def test_my_posts(self):
        self.client.post('/api/posts/', {'title': 'mine'}, format='json', **self.as_identity('1.1.1.1'))
        self.client.post('/api/posts/', {'title': 'theirs'}, format='json', **self.as_identity('2.2.2.2'))

        response = self.client.get('/api/posts/mine/', **self.as_identity('1.1.1.1'))
        self.assertEqual([p['title'] for p in response.data], ['mine'])

    def test_forwarded_identity(self):
        response = self.client.post(
            '/api/posts/', {'title': 'proxied'}, format='json',
            REMOTE_ADDR='', HTTP_X_FORWARDED_FOR='4.4.4.4, 10.0.0.1'
        )
        self.assertEqual(response.data['created_by'], '4.4.4.4')

    def test_update_and_delete_ownership(self):
        post_id = self.client.post(
            '/api/posts/', {'title': 't'}, format='json', **self.as_identity('1.1.1.1')
        ).data['id']

        response = self.client.patch(
            f'/api/posts/{post_id}/', {'title': 'x'}, format='json', **self.as_identity('2.2.2.2')
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.data, {'error': 'You can only update your own posts'})

        response = self.client.patch(
            f'/api/posts/{post_id}/', {'text': 'body'}, format='json', **self.as_identity('1.1.1.1')
        )
        self.assertEqual((response.data['title'], response.data['text']), ('t', 'body'))

        response = self.client.delete(f'/api/posts/{post_id}/', **self.as_identity('2.2.2.2'))
        self.assertEqual(response.status_code, 403)

        response = self.client.delete(f'/api/posts/{post_id}/', **self.as_identity('1.1.1.1'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['id'], post_id)
        self.assertEqual(self.client.get(f'/api/posts/{post_id}/').status_code, 404)

    def test_comment_edit_and_delete(self):
        post = Post.objects.create(title='t')
        comment_id = self.client.post(
            f'/api/posts/{post.id}/comments/', {'text': 'c'}, format='json', **self.as_identity('1.1.1.1')
        ).data['id']

        response = self.client.patch(
            f'/api/comments/{comment_id}/', {'text': 'edited'}, format='json', **self.as_identity('1.1.1.1')
        )
        self.assertEqual(response.data['text'], 'edited')

        response = self.client.delete(f'/api/comments/{comment_id}/', **self.as_identity('2.2.2.2'))
        self.assertEqual(response.status_code, 403)

        response = self.client.delete(f'/api/comments/{comment_id}/', **self.as_identity('1.1.1.1'))
        self.assertEqual(response.data['text'], 'edited')
        self.assertFalse(Comment.objects.filter(id=comment_id).exists())

    def test_comment_validation(self):
        post = Post.objects.create(title='t')

        response = self.client.post(f'/api/posts/{post.id}/comments/', {'text': '   '}, format='json')
        self.assertEqual(response.status_code, 400)
        self.assertIn('error', response.data)
        self.assertIn('text', response.data['details'])

    def test_framework_errors_use_error_format(self):
        response = self.client.put('/api/posts/', {}, format='json')
        self.assertEqual(response.status_code, 405)
        self.assertEqual(response.data, {'error': 'Method "PUT" not allowed.'})

    def test_large_inline_image(self):
        image = 'data:image/png;base64,' + 'A' * (3 * 1024 * 1024)

        response = self.client.post(
            '/api/posts/', {'title': 'photo', 'image': image},
            format='json', **self.as_identity('1.1.1.1')
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(len(response.data['image']), len(image))

    @override_settings(DATA_UPLOAD_MAX_MEMORY_SIZE=1024)
    def test_oversized_body(self):
        response = self.client.post(
            '/api/posts/', {'title': 'photo', 'image': 'A' * 4096}, format='json'
        )

        self.assertEqual(response.status_code, 413)
        self.assertEqual(response.data, {'error': 'Request body too large (limit is 1024 bytes)'})
        self.assertFalse(Post.objects.exists())

    def test_depth_limit_error(self):
        post = Post.objects.create(title='t')
        deepest = Comment.objects.create(post=post, text='deep', depth=MAX_COMMENT_DEPTH)

        response = self.client.post(
            f'/api/posts/{post.id}/comments/', {'text': 'deeper', 'parent_id': deepest.id}, format='json'
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data, {'error': 'Maximum nesting depth (5) reached'})

    def test_comment_likes_and_toggle(self):
        post = Post.objects.create(title='t')
        comment = Comment.objects.create(post=post, text='c')

        response = self.client.post(f'/api/comments/{comment.id}/like/', **self.as_identity('1.1.1.1'))
        self.assertEqual(response.data['like_count'], 1)

        response = self.client.delete(f'/api/comments/{comment.id}/like/', **self.as_identity('5.5.5.5'))
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data, {'error': 'User has not liked this comment'})

        response = self.client.post(
            '/api/likes/toggle/', {'target_type': 'comment', 'target_id': comment.id},
            format='json', **self.as_identity('1.1.1.1')
        )
        self.assertEqual(response.data['action'], 'unliked')
        self.assertEqual(response.data['target']['like_count'], 0)

        response = self.client.post(
            '/api/likes/toggle/', {'target_type': 'post', 'target_id': 999999}, format='json'
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data, {'error': 'Post not found'})

    def test_mutations_reach_the_app_broker(self):
        subscription = get_broker().subscribe(EventKind.POST_LIKED, loop=self.loop)
        self.addCleanup(subscription.close)
        post = Post.objects.create(title='t')

        self.client.post(f'/api/posts/{post.id}/like/', **self.as_identity('1.1.1.1'))

        payloads = collect(self.loop, subscription)
        self.assertEqual([(p['id'], p['like_count']) for p in payloads], [(post.id, 1)])

    def test_unknown_event_stream(self):
        response = self.client.get('/api/events/post-exploded/')
        self.assertEqual(response.status_code, 404)
