"""
Quay tag listing API fetcher
"""

import logging
from typing import List, Optional

import requests

from .base import TagSource, TagInfo, parse_timestamp
from .errors import FormatError, NetworkError, OperationTimeoutError

logger = logging.getLogger(__name__)


class QuayTagFetcher(TagSource):
    """Fetches tag metadata from Quay's paginated repository tag API"""

    def __init__(
        self,
        api_base: str = 'https://quay.io/api/v1/repository/',
        page_size: int = 100,
        timeout: float = 30.0,
        user_agent: str = 'oci-artifact-harvester/0.1.0',
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize Quay fetcher

        Args:
            api_base: Repository API base URL, ending with a slash
            page_size: Tags requested per page (default: 100)
            timeout: Per-request timeout in seconds
            user_agent: User-Agent header value
            session: Optional requests session (default: a new one)
        """
        super().__init__(api_base)
        self.page_size = page_size
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'User-Agent': user_agent
        })

    @classmethod
    def from_config(cls, config, session: Optional[requests.Session] = None) -> 'QuayTagFetcher':
        return cls(
            api_base=config.tags_api_url,
            page_size=config.tags_page_size,
            timeout=config.request_timeout,
            user_agent=config.user_agent,
            session=session,
        )

    def build_tags_url(self, repository: str) -> str:
        return f'{self.base_url}{repository}/tag/'

    def list_tags(self, repository: str) -> List[TagInfo]:
        """
        List all tags for a repository, page by page

        Stops at the first page without tags. Any failure aborts the whole
        listing; pages fetched so far are discarded.

        Args:
            repository: Repository path (e.g., "org/test-artifacts")

        Returns:
            List of TagInfo objects in server order
        """
        tags = []
        page = 1

        while True:
            page_tags = self._fetch_page(repository, page)
            if not page_tags:
                break

            tags.extend(page_tags)
            page += 1

        logger.debug('fetched %d tags for %s in %d pages', len(tags), repository, page - 1)
        return tags

    def _fetch_page(self, repository: str, page: int) -> List[TagInfo]:
        url = self.build_tags_url(repository)
        params = {
            'limit': self.page_size,
            'page': page,
        }

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise OperationTimeoutError(f'timed out fetching tags from URL {url}: {e}', target=url) from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f'failed to fetch tags from URL {url}: {e}', url=url) from e

        if response.status_code != 200:
            raise NetworkError(
                f'failed to fetch tags from URL {url}: {response.status_code} {response.reason}',
                url=url,
                status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise FormatError(f'failed to decode tags response from URL {url}: {e}') from e

        if not isinstance(data, dict) or not isinstance(data.get('tags', []), list):
            raise FormatError(f'unexpected tags response from URL {url}')

        return [self._parse_tag(tag_data, url) for tag_data in data.get('tags', [])]

    def _parse_tag(self, tag_data: dict, url: str) -> TagInfo:
        """
        Parse tag data from the API response

        Args:
            tag_data: Tag entry from the API
            url: Page URL, for error messages

        Returns:
            TagInfo object
        """
        try:
            name = tag_data['name']
            last_modified = parse_timestamp(tag_data['last_modified'])
            size = int(tag_data.get('size') or 0)
        except (KeyError, TypeError, ValueError, FormatError) as e:
            raise FormatError(f'malformed tag entry {tag_data!r} from URL {url}: {e}') from e

        return TagInfo(name=name, last_modified=last_modified, size=size)
