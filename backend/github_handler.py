import git
import os
import shutil
import logging
import tempfile
from urllib.parse import urlsplit, urlunsplit

from errors import DetectionError

logger = logging.getLogger(__name__)


def authenticated_url(repo_url, token=None):
    """Splice a token into an https clone URL; ssh GitHub URLs are converted to https"""
    if not token:
        return repo_url
    url = repo_url
    if url.startswith('git@github.com:'):
        url = 'https://github.com/' + url[len('git@github.com:'):]
    if not url.startswith('https://'):
        return repo_url
    parts = urlsplit(url)
    host = parts.netloc.rsplit('@', 1)[-1]
    return urlunsplit((parts.scheme, f"{token}@{host}", parts.path, parts.query, parts.fragment))


def redact(text, token=None):
    if token and text:
        return str(text).replace(token, '***')
    return str(text)


class GitHubHandler:
    """Shallow clones of source repositories"""

    def clone_repo(self, repo_url, dest_path, token=None, branch=None):
        """Clone with depth=1 into dest_path, replacing anything already there"""
        if os.path.exists(dest_path):
            shutil.rmtree(dest_path, ignore_errors=True)
            logger.info(f"🧹 Removed existing directory: {dest_path}")

        clone_url = authenticated_url(repo_url, token)
        if token and clone_url != repo_url:
            logger.info("🔐 Using authenticated URL for private repo")

        kwargs = {'depth': 1}
        if branch:
            kwargs['branch'] = branch
        try:
            logger.info(f"📥 Cloning {repo_url} to {dest_path}...")
            repo = git.Repo.clone_from(clone_url, dest_path, **kwargs)
        except git.GitCommandError as e:
            message = redact(e, token)
            logger.error(f"❌ Failed to clone repository: {message}")
            raise DetectionError(f"Failed to clone repository {repo_url}: {message}")
        logger.info(f"✅ Repository cloned to {dest_path}")
        return repo

    def get_latest_commit(self, repo_url, token=None):
        """Head commit hash of the default branch"""
        workdir = tempfile.mkdtemp(prefix='launchpad-commit-')
        try:
            repo = self.clone_repo(repo_url, os.path.join(workdir, 'repo'), token=token)
            try:
                return repo.head.commit.hexsha
            finally:
                repo.close()
        finally:
            shutil.rmtree(workdir, ignore_errors=True)
