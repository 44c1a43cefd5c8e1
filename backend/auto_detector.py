import os
import shutil
import logging
import tempfile
from pathlib import Path

from errors import DetectionError
from github_handler import GitHubHandler

logger = logging.getLogger(__name__)

FALLBACK_LANGUAGE = 'generic'

# Checked in order; the first language with any marker present wins
LANGUAGE_MARKERS = [
    ('go', ['go.mod', 'go.sum', 'main.go', '*.go']),
    ('javascript', ['package.json', 'yarn.lock', 'package-lock.json', 'app.js', 'index.js', 'server.js']),
    ('python', ['requirements.txt', 'setup.py', 'pyproject.toml', 'Pipfile', 'app.py', 'main.py', '*.py']),
    ('rust', ['Cargo.toml', 'Cargo.lock', 'src/main.rs', 'src/lib.rs']),
    ('java', ['pom.xml', 'build.gradle', 'gradlew', 'src/main/java']),
    ('php', ['composer.json', 'index.php', '*.php']),
    ('ruby', ['Gemfile', 'Gemfile.lock', 'config.ru', '*.rb']),
]


class LanguageDetector:
    """
    Detect a repository's implementation language from marker files
    The table above is priority ordered, so a repo with both go.mod and
    package.json is treated as Go
    """

    def __init__(self, github=None, markers=None):
        self.github = github or GitHubHandler()
        self.markers = markers or LANGUAGE_MARKERS

    def detect_path(self, project_dir):
        root = Path(project_dir)
        for language, markers in self.markers:
            for marker in markers:
                if self._present(root, marker):
                    logger.info(f"🔍 Detected {language} (marker: {marker})")
                    return language
        logger.info(f"🔍 No language markers found, falling back to {FALLBACK_LANGUAGE}")
        return FALLBACK_LANGUAGE

    @staticmethod
    def _present(root, marker):
        if '*' in marker:
            return any(root.glob(marker)) or any((root / 'src').glob(marker))
        return (root / marker).exists()

    def detect(self, repo_url, token=None):
        """Shallow-clone the repository and scan it"""
        workdir = tempfile.mkdtemp(prefix='launchpad-detect-')
        try:
            dest = os.path.join(workdir, 'repo')
            repo = self.github.clone_repo(repo_url, dest, token=token)
            repo.close()
            return self.detect_path(dest)
        except DetectionError:
            raise
        except Exception as e:
            raise DetectionError(f"Language detection failed for {repo_url}: {str(e)}")
        finally:
            shutil.rmtree(workdir, ignore_errors=True)
