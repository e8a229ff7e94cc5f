"""
DRF Views
=========

API endpoints for the board.

IDENTITY NOTE:
--------------
There is no authentication. The caller's identity is derived from the
connection (board.identity) and is what ownership and like checks use.

Views stay thin: parse input, resolve identity, call the service with the
process broker, serialize. Board errors raised by the services are rendered
by board.exceptions.custom_exception_handler.
"""

from rest_framework import status, permissions
from rest_framework.views import APIView
from rest_framework.response import Response

from . import comments, queries, services
from .apps import get_broker
from .exceptions import NotFound
from .identity import get_request_identity
from .serializers import (
    PostSerializer,
    PostWriteSerializer,
    CommentSerializer,
    CommentCreateSerializer,
    CommentUpdateSerializer,
    LikeActionSerializer,
)


class BoardView(APIView):
    permission_classes = [permissions.AllowAny]

    @property
    def broker(self):
        return get_broker()

    def identity(self, request):
        return get_request_identity(request)


class PostListView(BoardView):
    """
    GET  /api/posts/   all posts, newest first, with comment trees
    POST /api/posts/   create a post

    QUERY COUNT for GET: 4 regardless of size (see queries)
    """

    def get(self, request):
        posts, index = queries.get_posts_with_comment_index()
        serializer = PostSerializer(posts, many=True, context={'comment_index': index})
        return Response(serializer.data)

    def post(self, request):
        serializer = PostWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        post = services.create_post(
            self.identity(request),
            broker=self.broker,
            **serializer.validated_data
        )
        return Response(PostSerializer(post).data, status=status.HTTP_201_CREATED)


class MyPostsView(BoardView):
    """
    GET /api/posts/mine/

    Posts created by the caller's identity.
    """

    def get(self, request):
        posts, index = queries.get_posts_with_comment_index(created_by=self.identity(request))
        serializer = PostSerializer(posts, many=True, context={'comment_index': index})
        return Response(serializer.data)


class PostDetailView(BoardView):
    """
    GET    /api/posts/<id>/
    PATCH  /api/posts/<id>/   creator only
    DELETE /api/posts/<id>/   creator only
    """

    def get(self, request, post_id):
        post = queries.get_post(post_id)
        if post is None:
            raise NotFound("Post not found")
        index = queries.index_comments(queries.get_comments_for_posts([post.id]))
        return Response(PostSerializer(post, context={'comment_index': index}).data)

    def patch(self, request, post_id):
        serializer = PostWriteSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        post = services.update_post(
            post_id,
            self.identity(request),
            broker=self.broker,
            **serializer.validated_data
        )
        return Response(PostSerializer(post).data)

    def delete(self, request, post_id):
        prior_state = services.delete_post(post_id, self.identity(request), broker=self.broker)
        return Response(prior_state)


class PostCommentsView(BoardView):
    """
    GET  /api/posts/<post_id>/comments/   top-level comments, newest first
    POST /api/posts/<post_id>/comments/   create a comment

    Body:
    {
        "text": "Comment text",
        "parent_id": 123  // optional, for replies
    }
    """

    def get(self, request, post_id):
        top_level = comments.list_top_level(post_id)
        return Response(CommentSerializer(top_level, many=True).data)

    def post(self, request, post_id):
        serializer = CommentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        comment = comments.create_comment(
            post_id,
            serializer.validated_data['text'],
            self.identity(request),
            parent_id=serializer.validated_data.get('parent_id'),
            broker=self.broker,
        )
        return Response(CommentSerializer(comment).data, status=status.HTTP_201_CREATED)


class CommentDetailView(BoardView):
    """
    PATCH  /api/comments/<id>/   creator only
    DELETE /api/comments/<id>/   creator only, removes direct replies too
    """

    def patch(self, request, comment_id):
        serializer = CommentUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        comment = comments.update_comment(
            comment_id,
            serializer.validated_data['text'],
            self.identity(request),
            broker=self.broker,
        )
        return Response(CommentSerializer(comment).data)

    def delete(self, request, comment_id):
        prior_state = comments.delete_comment(comment_id, self.identity(request), broker=self.broker)
        return Response(prior_state)


class CommentRepliesView(BoardView):
    """GET /api/comments/<id>/replies/  direct replies, newest first"""

    def get(self, request, comment_id):
        replies = comments.list_replies(comment_id)
        return Response(CommentSerializer(replies, many=True).data)


class LikePostView(BoardView):
    """
    POST   /api/posts/<post_id>/like/
    DELETE /api/posts/<post_id>/like/
    """

    def post(self, request, post_id):
        post = services.like_post(self.identity(request), post_id, broker=self.broker)
        return Response(PostSerializer(post).data)

    def delete(self, request, post_id):
        post = services.unlike_post(self.identity(request), post_id, broker=self.broker)
        return Response(PostSerializer(post).data)


class LikeCommentView(BoardView):
    """
    POST   /api/comments/<comment_id>/like/
    DELETE /api/comments/<comment_id>/like/
    """

    def post(self, request, comment_id):
        comment = services.like_comment(self.identity(request), comment_id, broker=self.broker)
        return Response(CommentSerializer(comment).data)

    def delete(self, request, comment_id):
        comment = services.unlike_comment(self.identity(request), comment_id, broker=self.broker)
        return Response(CommentSerializer(comment).data)


class LikeToggleView(BoardView):
    """
    POST /api/likes/toggle/

    Toggle like on a post or comment.

    Body:
    {
        "target_type": "post" | "comment",
        "target_id": 123
    }

    Returns:
    {
        "action": "liked" | "unliked",
        "target": { ...post or comment... }
    }
    """

    def post(self, request):
        serializer = LikeActionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        target_type = serializer.validated_data['target_type']
        action, target = services.toggle_like(
            target_type,
            serializer.validated_data['target_id'],
            self.identity(request),
            broker=self.broker,
        )
        return Response({
            'action': action,
            'target': services.serialize_target(target_type, target),
        })
