import re
import json
import http.client
import random

import pytest

from canvas_api import CanvasConfig, CanvasAPIClient, CanvasAPIError, StaticTokenProvider

BASE_URL = "https://canvas.test"


@pytest.fixture
def config():
    return CanvasConfig(api_token="test-token", base_url=BASE_URL, request_delay=0)


class FakeResponse:
    def __init__(self, status=200, body=None, headers=None, reason="OK"):
        self.status = status
        self.reason = reason
        if body is None:
            self._body = ""
        elif isinstance(body, str):
            self._body = body
        else:
            self._body = json.dumps(body)
        self._headers = headers or {}

    def read(self):
        return self._body.encode("utf-8")

    def getheader(self, name, default=None):
        return self._headers.get(name, default)


class FakeHTTPServer:
    """Stands in for http.client connections; handler(method, path, body) -> FakeResponse."""

    def __init__(self):
        self.requests = []
        self.handler = lambda method, path, body: FakeResponse(body={})

    def connection(self, host, port, timeout=None):
        server = self

        class Connection:
            def request(self, method, path, body=None, headers=None):
                server.requests.append({
                    "host": host,
                    "method": method,
                    "path": path,
                    "body": json.loads(body) if body else None,
                    "headers": headers,
                })
                self._response = server.handler(method, path, body)

            def getresponse(self):
                return self._response

            def close(self):
                pass

        return Connection()


@pytest.fixture
def http_server(monkeypatch):
    server = FakeHTTPServer()
    monkeypatch.setattr(http.client, "HTTPSConnection", server.connection)
    monkeypatch.setattr(http.client, "HTTPConnection", server.connection)
    return server


@pytest.fixture
def client(config, http_server):
    return CanvasAPIClient(StaticTokenProvider("test-token"), config)


class FakeCanvas:
    """In-memory Canvas course exposing the same fetch() as CanvasAPIClient."""

    def __init__(self, config):
        self.config = config
        self.courses = {}
        self.users = []
        self.sections = []
        self.fail_paths = set()
        self.fail_section_names = set()
        self.fail_enroll_users = set()
        self.fail_delete_enrollments = set()
        self.created_sections = []
        self.created_enrollments = []
        self.deleted_enrollments = []
        self._next_id = 9000

    def new_id(self):
        self._next_id += 1
        return self._next_id

    def add_course(self, course_id, name="Biology 101"):
        self.courses[course_id] = {"id": course_id, "name": name}

    def add_section(self, section_id, name, student_ids=()):
        self.sections.append({
            "id": section_id,
            "name": name,
            "total_students": len(student_ids),
            "students": [{"id": s, "name": f"Student {s}"} for s in student_ids] or None,
        })

    def add_student(self, user_id, *section_ids):
        self.users.append({
            "id": user_id,
            "name": f"Student {user_id}",
            "enrollments": [
                {"id": user_id * 100 + i, "course_section_id": sid, "user_id": user_id}
                for i, sid in enumerate(section_ids)
            ],
        })

    def fetch(self, path, params=None, method="GET", data=None):
        if path in self.fail_paths:
            raise CanvasAPIError("API request failed: 500 Internal Server Error", 500, "", path)

        if method == "GET":
            match = re.fullmatch(r"/api/v1/courses/(\d+)", path)
            if match:
                course = self.courses.get(int(match.group(1)))
                if course is None:
                    raise CanvasAPIError("API request failed: 404 Not Found", 404, "", path)
                return course
            match = re.fullmatch(r"/api/v1/sections/(\d+)", path)
            if match:
                section = next((s for s in self.sections if s["id"] == int(match.group(1))), None)
                if section is None:
                    raise CanvasAPIError("API request failed: 404 Not Found", 404, "", path)
                return dict(section, course_id=next(iter(self.courses)))
            if re.fullmatch(r"/api/v1/courses/\d+/users", path):
                return list(self.users)
            if re.fullmatch(r"/api/v1/courses/\d+/sections", path):
                return list(self.sections)

        if method == "POST":
            if re.fullmatch(r"/api/v1/courses/\d+/sections", path):
                name = data["course_section"]["name"]
                if name in self.fail_section_names:
                    raise CanvasAPIError("API request failed: 400 Bad Request", 400, "", path)
                section = {"id": self.new_id(), "name": name, "total_students": None, "students": None}
                self.sections.append(section)
                self.created_sections.append(section)
                return section
            match = re.fullmatch(r"/api/v1/sections/(\d+)/enrollments", path)
            if match:
                user_id = data["enrollment"]["user_id"]
                if user_id in self.fail_enroll_users:
                    raise CanvasAPIError("API request failed: 400 Bad Request", 400, "", path)
                section_id = int(match.group(1))
                enrollment = {"id": self.new_id(), "course_section_id": section_id, "user_id": user_id}
                self.created_enrollments.append(enrollment)
                section = next(s for s in self.sections if s["id"] == section_id)
                section["students"] = (section["students"] or []) + [{"id": user_id}]
                section["total_students"] = (section["total_students"] or 0) + 1
                user = next((u for u in self.users if u["id"] == user_id), None)
                if user is not None:
                    user["enrollments"].append(dict(enrollment))
                return enrollment

        if method == "DELETE":
            match = re.fullmatch(r"/api/v1/courses/\d+/enrollments/(\d+)", path)
            if match:
                enrollment_id = int(match.group(1))
                if enrollment_id in self.fail_delete_enrollments:
                    raise CanvasAPIError("API request failed: 404 Not Found", 404, "", path)
                self.deleted_enrollments.append((enrollment_id, dict(params)["task"]))
                return {"id": enrollment_id, "enrollment_state": "deleted"}

        raise AssertionError(f"Unexpected request {method} {path}")

    def section_sizes(self, *names):
        sizes = {}
        for name in names:
            section = next(s for s in self.sections if s["name"] == name)
            sizes[name] = section["total_students"] or 0
        return sizes


@pytest.fixture
def canvas(config):
    fake = FakeCanvas(config)
    fake.add_course(101)
    return fake


@pytest.fixture
def rng():
    return random.Random(1234)
