"""
Canvas API access for the random section enrollment tool.

Holds everything that talks to Canvas:
• CanvasConfig / get_config() - settings read from the environment
• CanvasAPIClient - bearer-token HTTP client that drains Link-header pagination
• Course / Member / Enrollment / Section - the records the tool works with
• Gateway functions - get_course, list_students, list_sections, create_section,
  create_enrollment, delete_enrollment

Gateway functions never raise CanvasAPIError. They log the failure and return
None, so callers must check the result.
"""

import os
import re
import csv
import json
import http.client
import urllib.parse
import time
import logging
from datetime import datetime
from typing import List, Dict, Any, Optional, Union, Tuple, Protocol
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DROP_TASKS = ('delete', 'conclude', 'deactivate', 'inactivate')

QueryParams = Union[Dict[str, Any], List[Tuple[str, Any]]]


class TokenProvider(Protocol):
    """Protocol for providing Canvas API tokens."""
    def get_token(self) -> str:
        """Get the current API token."""
        ...


class EnvTokenProvider:
    """Token provider that reads from environment variable."""
    def __init__(self, env_var: str = 'CANVAS_API_TOKEN', fallback_var: str = 'API_TOKEN'):
        self.env_var = env_var
        self.fallback_var = fallback_var

    def get_token(self) -> str:
        token = os.getenv(self.env_var) or os.getenv(self.fallback_var)
        if not token or token == 'PLACEHOLDERAPIKEY':
            raise ValueError(f"API token not found in environment variable {self.env_var}")
        return token


class StaticTokenProvider:
    """Token provider for a token that was already resolved."""
    def __init__(self, token: str):
        self.token = token

    def get_token(self) -> str:
        return self.token


@dataclass
class CanvasConfig:
    """Configuration settings for Canvas API operations."""
    api_token: str
    base_url: str
    per_page: int = 100
    timeout: int = 30
    max_pages: int = 50
    request_delay: float = 0.2
    drop_task: str = 'delete'
    audit_log_path: Optional[str] = None

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not self.api_token or self.api_token == 'PLACEHOLDERAPIKEY':
            raise ValueError("API token is required and cannot be placeholder")

        if not self.base_url:
            raise ValueError("Base URL is required")

        if self.drop_task not in DROP_TASKS:
            raise ValueError(f"Drop task must be one of {', '.join(DROP_TASKS)}, got '{self.drop_task}'")

        # Ensure base URL doesn't end with slash or the API prefix every path already carries
        self.base_url = self.base_url.rstrip('/')
        if self.base_url.endswith('/api/v1'):
            self.base_url = self.base_url[:-len('/api/v1')]


def _env_number(name: str, default, cast):
    try:
        return cast(os.getenv(name, str(default)))
    except ValueError:
        return default


def get_config() -> CanvasConfig:
    """Get Canvas API configuration from environment variables."""
    api_token = os.getenv('CANVAS_API_TOKEN') or os.getenv('API_TOKEN')
    base_url = os.getenv('CANVAS_BASE_URL') or os.getenv('API_ROOT')

    return CanvasConfig(
        api_token=api_token,
        base_url=base_url,
        per_page=_env_number('CANVAS_PER_PAGE', 100, int),
        timeout=_env_number('CANVAS_TIMEOUT', 30, int),
        max_pages=_env_number('CANVAS_MAX_PAGES', 50, int),
        request_delay=_env_number('CANVAS_REQUEST_DELAY', 0.2, float),
        drop_task=os.getenv('DROP_ENROLLMENT_TASK', 'delete').lower(),
        audit_log_path=os.getenv('AUDIT_LOG_PATH', 'logs/section_audit.csv') or None
    )


class CanvasAPIError(Exception):
    """Custom exception for Canvas API errors with detailed context."""
    def __init__(self, message: str, status_code: Optional[int] = None,
                 response_body: Optional[str] = None, request_url: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(self.message)


_LINK_PATTERN = re.compile(r'<([^>]*)>\s*;\s*rel="?([^";,]+)"?')


def parse_link_header(value: Optional[str]) -> Dict[str, str]:
    """Map each rel of an RFC 5988 Link header to its URL.

    Example:
        '<https://x/api/v1/courses/1/users?page=2>; rel="next"'
        -> {'next': 'https://x/api/v1/courses/1/users?page=2'}
    """
    links = {}
    for url, rels in _LINK_PATTERN.findall(value or ''):
        for rel in rels.split():
            links.setdefault(rel, url)
    return links


class CanvasAPIClient:
    """Canvas API client with Link-header pagination and error handling."""

    def __init__(self, token_provider: TokenProvider, config: CanvasConfig):
        self.token_provider = token_provider
        self.config = config

    def _rate_limit(self):
        """Space requests out; Canvas throttles bursts per token."""
        if self.config.request_delay > 0:
            time.sleep(self.config.request_delay)

    def _send(self, method: str, path: str, params: Optional[QueryParams] = None,
              data: Optional[Dict] = None) -> Tuple[Any, Optional[str]]:
        """Make one HTTP request and return (decoded body, Link header)."""
        self._rate_limit()

        # Next-page links are absolute; everything else is relative to base_url
        if path.startswith(('http://', 'https://')):
            parsed_url = urllib.parse.urlparse(path)
        else:
            parsed_url = urllib.parse.urlparse(self.config.base_url + path)
        host = parsed_url.hostname
        port = parsed_url.port or (443 if parsed_url.scheme == 'https' else 80)

        full_path = parsed_url.path
        if parsed_url.query:
            full_path += '?' + parsed_url.query
        if params:
            # doseq=True encodes list params correctly (include[]=a&include[]=b)
            query_string = urllib.parse.urlencode(params, doseq=True)
            separator = '&' if '?' in full_path else '?'
            full_path += separator + query_string

        request_url = f"{parsed_url.scheme}://{parsed_url.netloc}{full_path}"

        if parsed_url.scheme == 'https':
            conn = http.client.HTTPSConnection(host, port, timeout=self.config.timeout)
        else:
            conn = http.client.HTTPConnection(host, port, timeout=self.config.timeout)

        try:
            headers = {
                'Authorization': f'Bearer {self.token_provider.get_token()}',
                'Content-Type': 'application/json',
                'Accept': 'application/json'
            }

            request_body = None
            if data:
                request_body = json.dumps(data).encode('utf-8')

            conn.request(method, full_path, body=request_body, headers=headers)
            response = conn.getresponse()
            response_body = response.read().decode('utf-8')
            link_header = response.getheader('Link')

            if response.status in [200, 201, 204]:
                if response_body.strip():
                    try:
                        return json.loads(response_body), link_header
                    except json.JSONDecodeError as e:
                        raise CanvasAPIError(f"Invalid JSON response: {e}", response.status, response_body, request_url)
                return {}, link_header
            elif response.status == 401:
                raise CanvasAPIError(
                    f"Authentication failed: {response.status} {response.reason}. "
                    f"Please check your API token.",
                    response.status,
                    response_body,
                    request_url
                )
            elif response.status == 403:
                raise CanvasAPIError(
                    f"Permission denied: {response.status} {response.reason}. "
                    f"The token may not have the necessary permissions for this operation.",
                    response.status,
                    response_body,
                    request_url
                )
            elif response.status == 429:
                raise CanvasAPIError(
                    f"Rate limit exceeded: {response.status} {response.reason}.",
                    response.status,
                    response_body,
                    request_url
                )
            else:
                raise CanvasAPIError(
                    f"API request failed: {response.status} {response.reason}",
                    response.status,
                    response_body,
                    request_url
                )

        except (http.client.HTTPException, OSError) as e:
            raise CanvasAPIError(f"Network error: {e}", request_url=request_url)
        finally:
            conn.close()

    def fetch(self, path: str, params: Optional[QueryParams] = None, method: str = 'GET',
              data: Optional[Dict] = None) -> Any:
        """Make a request and drain every page of a list response.

        A list body is accumulated across pages by following rel="next" in the
        Link header until it is absent. Any other body is returned as is.
        Raises CanvasAPIError on the first failing page (partial results are
        dropped) or once more than config.max_pages pages still point onward.
        """
        query: List[Tuple[str, Any]] = [('per_page', self.config.per_page)]
        if params:
            query.extend(params.items() if isinstance(params, dict) else params)

        all_data: List[Any] = []
        url: str = path
        page_params: Optional[List[Tuple[str, Any]]] = query
        pages = 0

        while True:
            try:
                body, link_header = self._send(method, url, page_params, data)
            except CanvasAPIError as e:
                logger.debug(f"{method} {e.request_url or url} failed on page {pages + 1}: {e.message}")
                if e.response_body:
                    logger.debug(f"Response body: {e.response_body}")
                raise
            pages += 1

            if not isinstance(body, list):
                return body
            all_data.extend(body)

            next_url = parse_link_header(link_header).get('next')
            if not next_url:
                logger.debug(f"Retrieved {len(all_data)} items from {path} in {pages} page(s)")
                return all_data

            if pages > self.config.max_pages:
                message = f"Pagination stopped after {pages} pages (limit {self.config.max_pages}) for {path}"
                logger.warning(message)
                raise CanvasAPIError(message, request_url=next_url)

            # The next link already carries per_page and the caller's filters
            url, page_params = next_url, None


@dataclass
class Course:
    id: int
    name: str

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Course':
        return cls(id=data['id'], name=data.get('name') or '')


@dataclass
class Enrollment:
    """A user's membership in one section."""
    id: int
    section_id: int
    user_id: int

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Enrollment':
        return cls(id=data['id'], section_id=data.get('course_section_id'), user_id=data.get('user_id'))


@dataclass
class Member:
    """A student on the course roster with their enrollments in this course."""
    id: int
    name: str = ''
    enrollments: List[Enrollment] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Member':
        return cls(
            id=data['id'],
            name=data.get('name') or data.get('sortable_name') or '',
            enrollments=[Enrollment.from_api(e) for e in data.get('enrollments') or []]
        )


@dataclass
class Section:
    """A course section. occupancy is the running student count for a run."""
    id: int
    name: str
    occupancy: int = 0
    members: List[Member] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Section':
        # Canvas sends "students": null for an empty section
        students = data.get('students') or []
        return cls(
            id=data['id'],
            name=data.get('name') or '',
            occupancy=data.get('total_students') or 0,
            members=[Member.from_api(s) for s in students]
        )

    def has_member(self, user_id: int) -> bool:
        return any(m.id == user_id for m in self.members)


def log_audit_action(config: CanvasConfig, action: str, course_id: Optional[int], section_id: Optional[int],
                     user_id: Optional[int], enrollment_id: Optional[int], result: str,
                     dry_run: bool, message: str) -> None:
    """Log a write to the audit CSV, if one is configured."""
    if not config.audit_log_path:
        return

    audit_file = Path(config.audit_log_path)
    file_exists = audit_file.exists()

    try:
        audit_file.parent.mkdir(parents=True, exist_ok=True)
        with open(audit_file, 'a', newline='', encoding='utf-8') as f:
            fieldnames = ['timestamp', 'action', 'course_id', 'section_id', 'user_id',
                          'enrollment_id', 'result', 'dry_run', 'message']
            writer = csv.DictWriter(f, fieldnames=fieldnames)

            if not file_exists:
                writer.writeheader()

            writer.writerow({
                'timestamp': datetime.now().isoformat(),
                'action': action,
                'course_id': course_id or '',
                'section_id': section_id or '',
                'user_id': user_id or '',
                'enrollment_id': enrollment_id or '',
                'result': result,
                'dry_run': 'Yes' if dry_run else 'No',
                'message': message
            })
    except IOError as e:
        logger.warning(f"Failed to write audit log: {e}")


# Gateway: thin named operations over CanvasAPIClient.fetch

def get_course(client: CanvasAPIClient, course_id: int) -> Optional[Course]:
    """Fetch a single course by id from Canvas."""
    try:
        return Course.from_api(client.fetch(f'/api/v1/courses/{course_id}'))
    except CanvasAPIError as e:
        logger.error(f"Failed to fetch course {course_id}: {e.message}")
        return None


def get_section(client: CanvasAPIClient, section_id: int) -> Optional[Dict[str, Any]]:
    """Fetch a single section by id from Canvas (raw JSON, includes course_id)."""
    try:
        return client.fetch(f'/api/v1/sections/{section_id}')
    except CanvasAPIError as e:
        logger.error(f"Failed to fetch section {section_id}: {e.message}")
        return None


def list_students(client: CanvasAPIClient, course_id: int) -> Optional[List[Member]]:
    """Fetch the full student roster of a course with each student's enrollments."""
    # API: GET /api/v1/courses/{course_id}/users?enrollment_type[]=student&include[]=enrollments
    params = [('enrollment_type[]', 'student'), ('include[]', 'enrollments')]
    try:
        users = client.fetch(f'/api/v1/courses/{course_id}/users', params)
    except CanvasAPIError as e:
        logger.error(f"Failed to list students for course {course_id}: {e.message}")
        return None
    return [Member.from_api(u) for u in users]


def list_sections(client: CanvasAPIClient, course_id: int) -> Optional[List[Section]]:
    """Fetch all sections of a course with their students and student totals."""
    # API: GET /api/v1/courses/{course_id}/sections?include[]=students&include[]=total_students
    params = [('include[]', 'students'), ('include[]', 'total_students')]
    try:
        sections = client.fetch(f'/api/v1/courses/{course_id}/sections', params)
    except CanvasAPIError as e:
        logger.error(f"Failed to list sections for course {course_id}: {e.message}")
        return None
    return [Section.from_api(s) for s in sections]


def create_section(client: CanvasAPIClient, course_id: int, name: str) -> Optional[Section]:
    """Create a section in a course. New sections start empty."""
    try:
        data = client.fetch(f'/api/v1/courses/{course_id}/sections', method='POST',
                            data={'course_section': {'name': name}})
    except CanvasAPIError as e:
        logger.error(f"Error creating section '{name}' in course {course_id}: {e.message}")
        log_audit_action(client.config, 'create_section', course_id, None, None, None, 'error', False, e.message)
        return None

    if not isinstance(data, dict) or not data.get('id'):
        message = "Canvas returned no section record"
        logger.error(f"Error creating section '{name}' in course {course_id}: {message}")
        log_audit_action(client.config, 'create_section', course_id, None, None, None, 'error', False, message)
        return None

    section = Section.from_api(data)
    section.occupancy = 0
    section.members = []
    logger.info(f"Created section '{name}' ({section.id}) in course {course_id}")
    log_audit_action(client.config, 'create_section', course_id, section.id, None, None, 'success', False,
                     f"Created section '{name}'")
    return section


def create_enrollment(client: CanvasAPIClient, section_id: int, user_id: int) -> Optional[Enrollment]:
    """Enroll a user in a section as a student."""
    # https://canvas.instructure.com/doc/api/enrollments.html#method.enrollments_api.create
    data = {'enrollment': {'user_id': user_id, 'type': 'StudentEnrollment'}}
    try:
        response = client.fetch(f'/api/v1/sections/{section_id}/enrollments', method='POST', data=data)
    except CanvasAPIError as e:
        logger.error(f"Error enrolling user {user_id} in section {section_id}: {e.message}")
        log_audit_action(client.config, 'enroll', None, section_id, user_id, None, 'error', False, e.message)
        return None

    if not isinstance(response, dict) or not response.get('id'):
        message = "Canvas returned no enrollment record"
        logger.error(f"Error enrolling user {user_id} in section {section_id}: {message}")
        log_audit_action(client.config, 'enroll', None, section_id, user_id, None, 'error', False, message)
        return None

    enrollment = Enrollment.from_api(response)
    log_audit_action(client.config, 'enroll', None, section_id, user_id, enrollment.id, 'success', False,
                     f"Enrolled user {user_id} in section {section_id}")
    return enrollment


def delete_enrollment(client: CanvasAPIClient, course_id: int, enrollment: Enrollment) -> Optional[Enrollment]:
    """Remove an enrollment using the configured task (delete by default)."""
    task = client.config.drop_task
    try:
        response = client.fetch(f'/api/v1/courses/{course_id}/enrollments/{enrollment.id}',
                                [('task', task)], method='DELETE')
    except CanvasAPIError as e:
        logger.error(f"Error removing enrollment {enrollment.id} (user {enrollment.user_id}, "
                     f"section {enrollment.section_id}) from course {course_id}: {e.message}")
        log_audit_action(client.config, task, course_id, enrollment.section_id, enrollment.user_id,
                         enrollment.id, 'error', False, e.message)
        return None

    log_audit_action(client.config, task, course_id, enrollment.section_id, enrollment.user_id,
                     enrollment.id, 'success', False,
                     f"Removed user {enrollment.user_id} from section {enrollment.section_id}")
    if isinstance(response, dict) and response.get('id'):
        return Enrollment.from_api(response)
    return enrollment
