from __future__ import annotations

import logging
import re
from urllib.parse import urlsplit

from config_getter.src.errors import FetchError, ParseError, ValidationError
from config_getter.src.fetcher import Fetcher
from config_getter.src.resource import ConfigMapResource

CONTROLLER_ANNOTATION = "x-k8s-io/curl-me-that"

_DIRECTIVE_PATTERN = re.compile(r"^\w+=\w\S*$")


def parse_annotation(annotation: str) -> tuple[str, str]:
    """Split a ``key=target`` directive at the first ``=``.

    The key must be a word (``[A-Za-z0-9_]+``) and the target must start with a
    word character and contain no whitespace.
    """
    if not _DIRECTIVE_PATTERN.match(annotation):
        raise ParseError(
            f"annotation {annotation!r} does not match format key=https://path.com"
        )
    key, _, target = annotation.partition("=")
    return key, target


def validate_url(target: str) -> str:
    """Return *target* as a fully qualified URL, defaulting to ``https://``."""
    if not target.startswith(("http://", "https://")):
        target = "https://" + target

    try:
        parts = urlsplit(target)
        hostname = parts.hostname
    except ValueError as exc:
        raise ValidationError(f"could not parse URL {target!r}: {exc}") from exc

    if not hostname:
        raise ValidationError(f"no host in {target!r}")
    return parts.geturl()


class AnnotationHandler:
    """Decide what a ConfigMap's ``data`` should look like given its directive.

    :meth:`process` is a pure decision over one snapshot: it returns ``None``
    when nothing must change, or an updated copy holding the fetched content.
    It never writes to the API server; the controller applies the result.

    Data keys are set once.  When ``data[key]`` already exists the target is
    not fetched again, even if the annotation now points elsewhere.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        annotation_key: str = CONTROLLER_ANNOTATION,
        logger: logging.Logger | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.annotation_key = annotation_key
        self.logger = logger or logging.getLogger(__name__)

    def process(self, resource: ConfigMapResource) -> ConfigMapResource | None:
        annotation = resource.annotations.get(self.annotation_key)
        if annotation is None:
            self.logger.debug("No %s annotation on %s", self.annotation_key, resource.key)
            return None

        key, target = parse_annotation(annotation)

        if resource.data is not None and key in resource.data:
            self.logger.debug("Key %s already present on %s; skipping fetch", key, resource.key)
            return None

        url = validate_url(target)
        self.logger.info("Fetching %s for key %s on %s", url, key, resource.key)
        try:
            body = self.fetcher.get(url)
        except FetchError:
            raise
        except Exception as exc:
            raise FetchError(f"failed to fetch {url}: {exc}") from exc

        updated = resource.deep_copy()
        if updated.data is None:
            updated.data = {}
        updated.data[key] = body.decode("utf-8", errors="replace")
        return updated
