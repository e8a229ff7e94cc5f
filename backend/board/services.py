"""
Post & Like Services
====================

This module handles post mutations and the like engine with:
1. Ownership checks (same identity only)
2. Atomic database operations
3. Event publication on the broker

CONCURRENCY STRATEGY:
---------------------
Problem: two identities liking the same post at the same moment.
Naive: fetch post -> likes += 1 -> save  -> LOST UPDATE!
Both requests read likes=0 and both write likes=1.

Solution: never write a counter from an in-memory copy.
    - Like row insert is guarded by a unique constraint
      (identity, content_type, object_id): a duplicate raises IntegrityError
    - like_count changes with F('like_count') +/- 1, evaluated by the DB
    - Both happen in one transaction, so like_count == number of Like rows

The fetch at the start of each operation is only an existence check; its
result is never saved back.

EVENTS:
-------
Events are published after the transaction block, with the reloaded entity
serialized as payload. A rejected mutation publishes nothing. Unlike
publishes the same <Kind>Liked event as like; the payload carries the new
count.
"""

import logging
from typing import Literal

from django.conf import settings
from django.contrib.contenttypes.models import ContentType
from django.db import transaction, IntegrityError
from django.db.models import F

from . import queries
from .broker import EventBroker, EventKind
from .exceptions import AlreadyLiked, Forbidden, NotFound, NotLiked
from .models import Post, Comment, Like, UNKNOWN_IDENTITY
from .serializers import CommentSerializer, PostSerializer

logger = logging.getLogger(__name__)

TargetKind = Literal['post', 'comment']

TARGET_MODELS = {
    'post': Post,
    'comment': Comment,
}

LIKED_EVENTS = {
    'post': EventKind.POST_LIKED,
    'comment': EventKind.COMMENT_LIKED,
}

POST_FIELDS = ('title', 'text', 'image')


def _target_model(kind: TargetKind):
    try:
        return TARGET_MODELS[kind]
    except KeyError:
        raise ValueError(f"Invalid target_type: {kind}")


def _get_target(kind: TargetKind, target_id: int):
    """Fetch a like target or raise NotFound."""
    target = queries.get_post(target_id) if kind == 'post' else queries.get_comment(target_id)
    if target is None:
        raise NotFound(f"{kind.capitalize()} not found")
    return target


def serialize_target(kind: TargetKind, target) -> dict:
    serializer_class = PostSerializer if kind == 'post' else CommentSerializer
    return serializer_class(target).data


# ============================================================================
# POSTS
# ============================================================================

def _get_owned_post(post_id: int, identity: str, action: str) -> Post:
    post = queries.get_post(post_id)
    if post is None:
        raise NotFound("Post not found")
    if post.created_by != identity:
        logger.warning(f"{identity} tried to {action} post {post_id} owned by {post.created_by}")
        raise Forbidden(f"You can only {action} your own posts")
    return post


def create_post(identity: str, *, broker: EventBroker, title: str = '', text: str = '', image: str = '') -> Post:
    post = Post.objects.create(
        title=title or '',
        text=text or '',
        image=image or '',
        created_by=identity or UNKNOWN_IDENTITY,
    )
    logger.info(f"{post.created_by} created post {post.id}")

    post = queries.get_post(post.id)
    broker.publish(EventKind.POST_CREATED, PostSerializer(post).data)
    return post


def update_post(post_id: int, identity: str, *, broker: EventBroker, **fields) -> Post:
    """
    Change title/text/image of one's own post.

    Only the fields given are written; unknown fields are a programming error.
    """
    unknown = set(fields) - set(POST_FIELDS)
    if unknown:
        raise ValueError(f"Cannot update post fields: {', '.join(sorted(unknown))}")

    _get_owned_post(post_id, identity, 'update')
    if fields:
        Post.objects.filter(id=post_id).update(**fields)
    logger.info(f"{identity} updated post {post_id}")

    post = queries.get_post(post_id)
    broker.publish(EventKind.POST_UPDATED, PostSerializer(post).data)
    return post


def delete_post(post_id: int, identity: str, *, broker: EventBroker) -> dict:
    """
    Delete one's own post and its likes.

    Comments stay unless BOARD_POST_DELETE_CASCADE is set.
    Returns the post as it was before deletion.
    """
    post = _get_owned_post(post_id, identity, 'delete')
    prior_state = PostSerializer(post).data

    with transaction.atomic():
        if getattr(settings, 'BOARD_POST_DELETE_CASCADE', False):
            deleted, _ = Comment.objects.filter(post_id=post_id).delete()
            logger.info(f"Cascade removed {deleted} row(s) with post {post_id}")
        post.delete()
    logger.info(f"{identity} deleted post {post_id}")

    broker.publish(EventKind.POST_DELETED, prior_state)
    return prior_state


# ============================================================================
# LIKES
# ============================================================================

def like(kind: TargetKind, target_id: int, identity: str, *, broker: EventBroker):
    """
    Like a post or comment atomically.

    OPERATION:
    1. Get target (verify exists)
    2. Create Like (unique constraint prevents duplicates)
    3. Increment counter with F()
    4. If IntegrityError: the identity already liked it

    Returns the updated target.
    """
    model = _target_model(kind)
    _get_target(kind, target_id)
    content_type = ContentType.objects.get_for_model(model)

    try:
        with transaction.atomic():
            Like.objects.create(
                identity=identity,
                content_type=content_type,
                object_id=target_id
            )
            model.objects.filter(id=target_id).update(like_count=F('like_count') + 1)
    except IntegrityError:
        logger.warning(f"{identity} already liked {kind} {target_id}")
        raise AlreadyLiked(f"User has already liked this {kind}")

    logger.info(f"{identity} liked {kind} {target_id}")
    return _publish_liked(kind, target_id, broker)


def unlike(kind: TargetKind, target_id: int, identity: str, *, broker: EventBroker):
    """Remove the identity's like from a post or comment."""
    model = _target_model(kind)
    _get_target(kind, target_id)
    content_type = ContentType.objects.get_for_model(model)

    with transaction.atomic():
        deleted_count, _ = Like.objects.filter(
            identity=identity,
            content_type=content_type,
            object_id=target_id
        ).delete()

        if not deleted_count:
            logger.warning(f"{identity} has not liked {kind} {target_id}")
            raise NotLiked(f"User has not liked this {kind}")

        model.objects.filter(id=target_id).update(like_count=F('like_count') - 1)

    logger.info(f"{identity} unliked {kind} {target_id}")
    return _publish_liked(kind, target_id, broker)


def _publish_liked(kind: TargetKind, target_id: int, broker: EventBroker):
    target = _get_target(kind, target_id)
    broker.publish(LIKED_EVENTS[kind], serialize_target(kind, target))
    return target


def like_post(identity: str, post_id: int, *, broker: EventBroker) -> Post:
    return like('post', post_id, identity, broker=broker)


def unlike_post(identity: str, post_id: int, *, broker: EventBroker) -> Post:
    return unlike('post', post_id, identity, broker=broker)


def like_comment(identity: str, comment_id: int, *, broker: EventBroker) -> Comment:
    return like('comment', comment_id, identity, broker=broker)


def unlike_comment(identity: str, comment_id: int, *, broker: EventBroker) -> Comment:
    return unlike('comment', comment_id, identity, broker=broker)


def has_liked(kind: TargetKind, target_id: int, identity: str) -> bool:
    return Like.objects.filter(
        identity=identity,
        content_type=ContentType.objects.get_for_model(_target_model(kind)),
        object_id=target_id
    ).exists()


def toggle_like(kind: TargetKind, target_id: int, identity: str, *, broker: EventBroker):
    """
    Toggle like on a post or comment.

    Returns (action, target) with action 'liked' or 'unliked'.

    IMPORTANT: This is NOT atomic across check-and-toggle!
    A race here is benign: the second request fails with AlreadyLiked or
    NotLiked and the counter stays consistent.
    """
    if has_liked(kind, target_id, identity):
        return 'unliked', unlike(kind, target_id, identity, broker=broker)
    return 'liked', like(kind, target_id, identity, broker=broker)
