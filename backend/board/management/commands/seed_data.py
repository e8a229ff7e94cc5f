"""
Management command to seed the database with sample data.

Usage: python manage.py seed_data
"""

import random
from django.core.management.base import BaseCommand

from board.apps import get_broker
from board.comments import create_comment
from board.exceptions import AlreadyLiked
from board.models import Post, Comment, Like, MAX_COMMENT_DEPTH
from board.services import create_post, like_post, like_comment


class Command(BaseCommand):
    help = 'Seed the database with sample data for testing'

    def add_arguments(self, parser):
        parser.add_argument(
            '--identities',
            type=int,
            default=10,
            help='Number of distinct caller identities to use'
        )
        parser.add_argument(
            '--posts',
            type=int,
            default=20,
            help='Number of posts to create'
        )
        parser.add_argument(
            '--comments',
            type=int,
            default=100,
            help='Number of comments to create'
        )
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Clear existing data before seeding'
        )

    def handle(self, *args, **options):
        self.broker = get_broker()

        if options['clear']:
            self.stdout.write('Clearing existing data...')
            Like.objects.all().delete()
            Comment.objects.all().delete()
            Post.objects.all().delete()

        identities = [f'10.0.0.{i + 1}' for i in range(options['identities'])]

        self.stdout.write('Creating posts...')
        posts = self._create_posts(identities, options['posts'])

        self.stdout.write('Creating comments...')
        comments = self._create_comments(identities, posts, options['comments'])

        self.stdout.write('Creating likes...')
        likes = self._create_likes(identities, posts, comments)

        self.stdout.write(self.style.SUCCESS(
            f'Successfully created:\n'
            f'  - {len(posts)} posts\n'
            f'  - {len(comments)} comments\n'
            f'  - {likes} likes'
        ))

    def _create_posts(self, identities, count):
        titles = [
            "Just discovered this amazing trick!",
            "What do you think about...",
            "Help needed with a problem",
            "Check out my latest project",
            "Unpopular opinion:",
            "TIL something interesting",
            "Weekly roundup",
            "Question for the community",
        ]
        texts = [
            "I've been working on this for a while and wanted to share my thoughts.",
            "Has anyone else experienced this? I'd love to hear your perspectives.",
            "Here's what I learned after years of experience in this field.",
        ]
        return [
            create_post(
                random.choice(identities),
                broker=self.broker,
                title=f"{random.choice(titles)} #{i + 1}",
                text=random.choice(texts),
            )
            for i in range(count)
        ]

    def _create_comments(self, identities, posts, count):
        comments = []
        comment_texts = [
            "Great point! I totally agree.",
            "Hmm, I'm not sure about this...",
            "Thanks for sharing!",
            "Can you elaborate on this?",
            "Well said!",
            "+1 to this",
        ]

        for _ in range(count):
            post = random.choice(posts)

            # 30% chance of being a reply to an existing comment that can still take one
            parent = None
            candidates = [
                c for c in comments
                if c.post_id == post.id and c.depth < MAX_COMMENT_DEPTH
            ]
            if candidates and random.random() < 0.3:
                parent = random.choice(candidates)

            comments.append(create_comment(
                post.id,
                random.choice(comment_texts),
                random.choice(identities),
                parent_id=parent.id if parent else None,
                broker=self.broker,
            ))
        return comments

    def _create_likes(self, identities, posts, comments):
        created = 0
        targets = [(like_post, post.id, 0.5) for post in posts]
        targets += [(like_comment, comment.id, 0.3) for comment in comments]

        for like, target_id, share in targets:
            for identity in random.sample(identities, k=max(1, int(len(identities) * share))):
                try:
                    like(identity, target_id, broker=self.broker)
                    created += 1
                except AlreadyLiked:
                    continue
        return created
