"""
Tests for request fingerprints, resource keys and request classification.
"""

import unittest

from ghrelay.core.fingerprint import fingerprint, keys_overlap, resource_key
from ghrelay.core.models import Category, ClientRequest, OperationKind, is_graphql_mutation


class TestClassification(unittest.TestCase):

    def test_graphql_query_vs_mutation(self):
        self.assertFalse(is_graphql_mutation("query { viewer { login } }"))
        self.assertFalse(is_graphql_mutation("{ viewer { login } }"))
        self.assertTrue(is_graphql_mutation("mutation { addStar(input: {}) { clientMutationId } }"))
        self.assertTrue(is_graphql_mutation("# create it\n  mutation Create { x }"))

    def test_mutation_after_other_definitions(self):
        fragment_first = (
            "fragment IssueFields on Issue { number title }\n"
            "mutation($id: ID!, $title: String!) {\n"
            "  createIssue(input: {repositoryId: $id, title: $title}) { issue { ...IssueFields } }\n"
            "}"
        )
        cases = {
            fragment_first: True,
            "query A { viewer { login } } mutation B { addStar(input: {}) { clientMutationId } }": True,
            'query A { search(query: "} {") { issueCount } } mutation B { x }': True,
            "query($mutation: String) { search(query: $mutation) { issueCount } }": False,
            '# mutation { x }\nquery { search(query: "mutation") { issueCount } }': False,
            "fragment F on Repository { mutation: name } query { viewer { login } }": False,
        }
        for document, expected in cases.items():
            with self.subTest(document=document):
                self.assertIs(is_graphql_mutation(document), expected)

        request = ClientRequest.graphql(fragment_first, {"id": "R_1", "title": "Bug"})
        self.assertIs(request.kind, OperationKind.GRAPHQL_MUTATION)
        self.assertFalse(request.idempotent)

    def test_idempotency(self):
        self.assertTrue(ClientRequest.graphql("query { viewer { login } }").idempotent)
        self.assertFalse(ClientRequest.graphql("mutation { x }").idempotent)
        self.assertTrue(ClientRequest.rest("get", "/user").idempotent)
        self.assertTrue(ClientRequest.rest("HEAD", "/user").idempotent)
        for method in ("POST", "PATCH", "PUT", "DELETE"):
            with self.subTest(method=method):
                self.assertFalse(ClientRequest.rest(method, "/repos/o/r/issues").idempotent)

    def test_category(self):
        self.assertEqual(ClientRequest.graphql("{ a }").category, Category.GRAPHQL)
        self.assertEqual(ClientRequest.rest("GET", "/user").category, Category.REST)
        self.assertIs(ClientRequest.graphql("mutation { a }").kind, OperationKind.GRAPHQL_MUTATION)


class TestFingerprint(unittest.TestCase):

    def test_whitespace_and_key_order_do_not_matter(self):
        a = ClientRequest.graphql(
            "query($o: String!) {\n  repository(owner: $o) { id }\n}",
            {"o": "octocat", "n": "hello"},
        )
        b = ClientRequest.graphql(
            "query($o: String!) { repository(owner: $o) { id } }",
            {"n": "hello", "o": "octocat"},
        )
        self.assertEqual(fingerprint(a), fingerprint(b))

    def test_different_variables_differ(self):
        a = ClientRequest.graphql("query { a }", {"x": 1})
        b = ClientRequest.graphql("query { a }", {"x": 2})
        self.assertNotEqual(fingerprint(a), fingerprint(b))

    def test_rest_path_slashes_and_param_order(self):
        a = ClientRequest.rest("GET", "/repos/o/r/issues/", params={"state": "open", "page": 1})
        b = ClientRequest.rest("get", "repos/o/r/issues", params={"page": "1", "state": "open"})
        self.assertEqual(fingerprint(a), fingerprint(b))

    def test_rest_method_matters(self):
        self.assertNotEqual(
            fingerprint(ClientRequest.rest("GET", "/user")),
            fingerprint(ClientRequest.rest("HEAD", "/user")),
        )

    def test_idempotency_key_only_affects_writes(self):
        read_a = ClientRequest.graphql("query { a }", idempotency_key="k1")
        read_b = ClientRequest.graphql("query { a }", idempotency_key="k2")
        self.assertEqual(fingerprint(read_a), fingerprint(read_b))

        write_a = ClientRequest.rest("POST", "/repos/o/r/issues", body={"title": "t"}, idempotency_key="k1")
        write_b = ClientRequest.rest("POST", "/repos/o/r/issues", body={"title": "t"}, idempotency_key="k2")
        self.assertNotEqual(fingerprint(write_a), fingerprint(write_b))


class TestResourceKey(unittest.TestCase):

    def test_rest_path(self):
        self.assertEqual(
            resource_key(ClientRequest.rest("GET", "/repos/Octocat/Hello/issues")),
            "repos/octocat/hello/issues",
        )

    def test_graphql_owner_name_variables(self):
        request = ClientRequest.graphql("query { a }", {"owner": "octocat", "name": "hello"})
        self.assertEqual(resource_key(request), "repos/octocat/hello")

    def test_explicit_resource_wins(self):
        request = ClientRequest.graphql("mutation { a }", {"owner": "x", "name": "y"}, resource="/repos/a/b/")
        self.assertEqual(resource_key(request), "repos/a/b")

    def test_no_key_for_plain_graphql(self):
        self.assertEqual(resource_key(ClientRequest.graphql("query { viewer { login } }")), "")

    def test_overlap(self):
        self.assertTrue(keys_overlap("repos/o/r", "repos/o/r/issues"))
        self.assertTrue(keys_overlap("repos/o/r/issues/1", "repos/o/r"))
        self.assertTrue(keys_overlap("repos/o/r", "repos/o/r"))
        self.assertFalse(keys_overlap("repos/o/r", "repos/o/rx"))
        self.assertFalse(keys_overlap("repos/o/r/issues", "repos/o/r/pulls"))
        self.assertFalse(keys_overlap("", "repos/o/r"))


if __name__ == "__main__":
    unittest.main()
