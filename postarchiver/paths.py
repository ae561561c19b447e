import os

from .constants import DATABASE_NAME, POSTS_PER_CHUNK


def get_archive_dir():
    base = os.environ.get("POST_ARCHIVER_DIR") or os.getcwd()
    return os.path.abspath(base)


def get_db_path(archive_dir=None):
    return os.path.join(archive_dir or get_archive_dir(), DATABASE_NAME)


def get_post_dir(archive_dir, post_id):
    # <archive>/<chunk>/<index>, POSTS_PER_CHUNK posts per chunk directory.
    chunk, index = divmod(int(post_id), POSTS_PER_CHUNK)
    return os.path.join(archive_dir, str(chunk), str(index))
