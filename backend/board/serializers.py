"""
DRF Serializers
===============

Serializers handle:
1. Validation of incoming data
2. Transformation of model instances to JSON (API responses AND event
   payloads published on the broker)
3. Nested reply serialization

DESIGN DECISIONS:
-----------------
1. Read and write serializers are separate; writes go through the services,
   which own ownership checks, depth limits and event publishing.
2. `replies` walks a pre-built comment index from the context when the view
   provides one (see queries.index_comments), otherwise it queries. Nesting
   is bounded by MAX_COMMENT_DEPTH.
"""

from rest_framework import serializers

from . import queries
from .models import Post, Comment


def _liked_by(obj) -> list[str]:
    # Uses the prefetched likes when present
    return [like.identity for like in obj.likes.all()]


class CommentSerializer(serializers.ModelSerializer):
    """A comment with its direct replies, recursively."""
    post_id = serializers.IntegerField(read_only=True)
    parent_id = serializers.IntegerField(read_only=True, allow_null=True)
    liked_by = serializers.SerializerMethodField()
    replies = serializers.SerializerMethodField()

    class Meta:
        model = Comment
        fields = [
            'id',
            'post_id',
            'parent_id',
            'text',
            'created_by',
            'created_at',
            'like_count',
            'liked_by',
            'depth',
            'replies',
        ]
        read_only_fields = fields

    def get_liked_by(self, obj):
        return _liked_by(obj)

    def get_replies(self, obj):
        index = self.context.get('comment_index')
        if index is not None:
            replies = index['children'].get(obj.id, [])
        else:
            replies = queries.list_replies(obj.id)
        return CommentSerializer(replies, many=True, context=self.context).data


class PostSerializer(serializers.ModelSerializer):
    """A post with its top-level comments and total comment count."""
    liked_by = serializers.SerializerMethodField()
    replies = serializers.SerializerMethodField()
    comment_count = serializers.SerializerMethodField()

    class Meta:
        model = Post
        fields = [
            'id',
            'title',
            'text',
            'image',
            'like_count',
            'liked_by',
            'replies',
            'comment_count',
            'created_by',
            'created_at',
        ]
        read_only_fields = fields

    def get_liked_by(self, obj):
        return _liked_by(obj)

    def get_replies(self, obj):
        index = self.context.get('comment_index')
        if index is not None:
            replies = index['roots'].get(obj.id, [])
        else:
            replies = queries.list_top_level_comments(obj.id)
        return CommentSerializer(replies, many=True, context=self.context).data

    def get_comment_count(self, obj):
        # Annotated by queries.posts_queryset()
        count = getattr(obj, 'comment_count', None)
        if count is None:
            count = queries.count_comments(obj.id)
        return count


class PostWriteSerializer(serializers.Serializer):
    """
    Input for creating and updating posts.

    All fields optional. On update only the fields sent are changed.
    """
    title = serializers.CharField(max_length=300, required=False, allow_blank=True)
    text = serializers.CharField(required=False, allow_blank=True, trim_whitespace=False)
    image = serializers.CharField(required=False, allow_blank=True, trim_whitespace=False)


class CommentCreateSerializer(serializers.Serializer):
    """Input for creating comments. parent_id is optional, for replies."""
    text = serializers.CharField()
    parent_id = serializers.IntegerField(required=False, allow_null=True, min_value=1)

    def validate_text(self, value):
        if not value.strip():
            raise serializers.ValidationError("Comment cannot be empty.")
        return value.strip()


class CommentUpdateSerializer(serializers.Serializer):
    text = serializers.CharField()

    def validate_text(self, value):
        if not value.strip():
            raise serializers.ValidationError("Comment cannot be empty.")
        return value.strip()


class LikeActionSerializer(serializers.Serializer):
    """
    Serializer for the unified like toggle.

    Existence of the target is checked by the like engine.
    """
    target_type = serializers.ChoiceField(choices=['post', 'comment'])
    target_id = serializers.IntegerField(min_value=1)
