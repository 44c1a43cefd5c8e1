"""
Image Pipeline
Tag derivation, build-stream consumption, authoritative image resolution and
image housekeeping
"""
import io
import re
import time
import hashlib
import logging
import tarfile

from errors import BuildError, ImageResolutionError, LaunchpadError, RuntimeBackendError

logger = logging.getLogger(__name__)

_NON_TAG = re.compile(r'[^a-z0-9]+')
_BUILT = re.compile(r'Successfully built ([0-9a-f]+)')


def _normalize(text):
    return _NON_TAG.sub('-', text.lower()).strip('-')


def clean_app_id(app_id):
    """app_1700000000_123456 -> 1700000000-123456"""
    if app_id.startswith('app_'):
        app_id = app_id[len('app_'):]
    return _normalize(app_id)


def image_name_prefix(prefix, app_id):
    return f"{_normalize(prefix)}-{clean_app_id(app_id)}-"


def derive_tag(prefix, app_id, commit_hash):
    """Deterministic: only lowercase letters, digits and hyphens"""
    return _normalize(f"{prefix}-{clean_app_id(app_id)}-{commit_hash[:8]}")


def fallback_hash(clock=time.time_ns):
    return hashlib.sha1(str(clock()).encode()).hexdigest()


def make_build_context(descriptor, name='Dockerfile'):
    """Tar archive holding only the rendered descriptor"""
    data = descriptor.encode('utf-8')
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode='w') as tar:
        info = tarfile.TarInfo(name=name)
        info.size = len(data)
        info.mtime = int(time.time())
        tar.addfile(info, io.BytesIO(data))
    buf.seek(0)
    return buf


class ImagePipeline:
    def __init__(self, settings=None, github=None, sleep=time.sleep, clock=time.time_ns):
        self.github = github
        self.prefix = settings.image_prefix if settings else 'launchpad'
        self.retention = settings.image_retention if settings else 3
        self.attempts = settings.tag_lookup_attempts if settings else 5
        self.delay = settings.tag_lookup_delay if settings else 1.0
        self._sleep = sleep
        self._clock = clock

    ###############################################
    # Tags
    ###############################################

    def resolve_commit(self, repo_url, token=None):
        """Latest commit hash, or a time-derived pseudo-hash; never raises"""
        if self.github is not None:
            try:
                commit = self.github.get_latest_commit(repo_url, token=token)
                if commit:
                    return commit
            except Exception as e:
                logger.warning(f"⚠️ Could not read latest commit for {repo_url}: {str(e)}")
        pseudo = fallback_hash(self._clock)
        logger.info(f"🕒 Using time-derived hash {pseudo[:8]} for image tag")
        return pseudo

    def tag_for(self, app_id, repo_url, token=None):
        return derive_tag(self.prefix, app_id, self.resolve_commit(repo_url, token))

    ###############################################
    # Build / resolve
    ###############################################

    def build(self, builder, tag, descriptor, on_line=None):
        """Stream a build; returns the image id reported by the stream, if any"""
        captured = None
        try:
            for chunk in builder.build_image(tag, make_build_context(descriptor)):
                if 'error' in chunk or 'errorDetail' in chunk:
                    detail = chunk.get('error') or (chunk.get('errorDetail') or {}).get('message', 'unknown error')
                    raise BuildError(f"Image build failed: {detail.strip()}")

                aux = chunk.get('aux')
                if isinstance(aux, dict) and aux.get('ID'):
                    captured = aux['ID']

                line = (chunk.get('stream') or chunk.get('status') or '').strip()
                if not line:
                    continue
                if on_line:
                    on_line(line)
                match = _BUILT.search(line)
                if match:
                    captured = match.group(1)
                elif line.startswith('sha256:'):
                    captured = line.split()[0]
        except RuntimeBackendError as e:
            raise BuildError(f"Image build failed: {str(e)}")

        if captured:
            logger.info(f"🏗️ Build finished for {tag} (stream id {captured[:19]})")
        return captured

    def resolve(self, builder, tag, fallback_id=None):
        """Look the tag up with bounded retries, then fall back to the stream id"""
        for attempt in range(1, self.attempts + 1):
            try:
                image_id = builder.find_image_by_tag(tag)
            except RuntimeBackendError as e:
                logger.warning(f"⚠️ Image lookup for {tag} failed (attempt {attempt}/{self.attempts}): {str(e)}")
                image_id = None
            if image_id:
                return image_id
            if attempt < self.attempts:
                self._sleep(self.delay)

        if fallback_id:
            logger.warning(f"⚠️ Tag {tag} not visible after {self.attempts} attempts, using build id {fallback_id[:19]}")
            return fallback_id
        raise ImageResolutionError(f"Image {tag} not found after {self.attempts} attempts")

    def build_and_resolve(self, builder, tag, descriptor, on_line=None):
        fallback_id = self.build(builder, tag, descriptor, on_line)
        return self.resolve(builder, tag, fallback_id)

    ###############################################
    # Housekeeping
    ###############################################

    def cleanup_old_images(self, runtime, app_id, keep=None):
        """Keep the newest N images for the app; returns removed ids"""
        keep = self.retention if keep is None else keep
        name_prefix = image_name_prefix(self.prefix, app_id)
        owned = [
            img for img in runtime.list_images()
            if any(tag.startswith(name_prefix) for tag in img['tags'])
        ]
        owned.sort(key=lambda img: img.get('created') or '', reverse=True)

        removed = []
        for img in owned[keep:]:
            try:
                runtime.remove_image(img['id'])
                removed.append(img['id'])
            except RuntimeBackendError as e:
                logger.warning(f"⚠️ Could not remove old image {img['id'][:19]}: {str(e)}")
        if removed:
            logger.info(f"🧹 Removed {len(removed)} old images for {app_id}")
        return removed

    def prune_dangling(self, runtime):
        return runtime.prune_dangling_images()

    def housekeeping(self, runtime, app_id):
        """Advisory cleanup; failures are logged and swallowed"""
        try:
            self.cleanup_old_images(runtime, app_id)
        except LaunchpadError as e:
            logger.warning(f"⚠️ Old image cleanup failed for {app_id}: {str(e)}")
        try:
            self.prune_dangling(runtime)
        except LaunchpadError as e:
            logger.warning(f"⚠️ Dangling image prune failed: {str(e)}")
