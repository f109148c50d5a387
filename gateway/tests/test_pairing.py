from dataclasses import replace
import unittest

from duet.errors import AlreadyPaired, ConflictingPairing, NotFound, ValidationError
from duet.identities import InMemoryIdentityStore
from duet.pairing import ConversationPairing


class ConversationPairingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.identities = InMemoryIdentityStore()
        self.pairing = ConversationPairing(self.identities)

    def _create(self, username: str):
        return self.identities.create(username, username.title(), "hash", max_identities=3)

    def test_lone_identity_is_not_paired(self):
        alice = self._create("alice")

        self.assertIsNone(self.pairing.attempt_auto_pair(alice.identity_id))
        self.assertIsNone(self.pairing.counterpart_id(alice.identity_id))

    def test_second_identity_pairs_automatically(self):
        alice = self._create("alice")
        bob = self._create("bob")

        pair = self.pairing.attempt_auto_pair(bob.identity_id)

        self.assertIsNotNone(pair)
        self.assertEqual(pair[0].counterpart_id, alice.identity_id)
        self.assertEqual(self.pairing.counterpart_id(alice.identity_id), bob.identity_id)
        self.assertEqual(self.pairing.resolve_counterpart(bob.identity_id).username, "alice")

    def test_auto_pair_skips_when_other_is_taken(self):
        alice = self._create("alice")
        bob = self._create("bob")
        self.pairing.attempt_auto_pair(bob.identity_id)
        carol = self._create("carol")

        self.assertIsNone(self.pairing.attempt_auto_pair(carol.identity_id))
        self.assertEqual(self.pairing.counterpart_id(alice.identity_id), bob.identity_id)

    def test_link_by_username(self):
        alice = self._create("alice")
        self._create("bob")
        carol = self._create("carol")

        requester, target = self.pairing.link_by_username(alice.identity_id, "carol")

        self.assertEqual(requester.counterpart_id, carol.identity_id)
        self.assertEqual(target.counterpart_id, alice.identity_id)

    def test_link_reports_already_paired_before_unknown_target(self):
        alice = self._create("alice")
        bob = self._create("bob")
        self.identities.pair(alice.identity_id, bob.identity_id)

        with self.assertRaises(AlreadyPaired):
            self.pairing.link_by_username(alice.identity_id, "nobody")

    def test_link_unknown_target(self):
        alice = self._create("alice")

        with self.assertRaises(NotFound):
            self.pairing.link_by_username(alice.identity_id, "nobody")

    def test_link_to_someone_elses_partner(self):
        alice = self._create("alice")
        bob = self._create("bob")
        carol = self._create("carol")
        self.identities.pair(alice.identity_id, bob.identity_id)

        with self.assertRaises(ConflictingPairing):
            self.pairing.link_by_username(carol.identity_id, "bob")

    def test_link_requires_username(self):
        alice = self._create("alice")

        with self.assertRaises(ValidationError):
            self.pairing.link_by_username(alice.identity_id, "")

    def test_one_sided_pointer_is_not_a_counterpart(self):
        alice = self._create("alice")
        bob = self._create("bob")
        # half-written pairing
        self.identities._identities[alice.identity_id] = replace(alice, counterpart_id=bob.identity_id)

        self.assertIsNone(self.pairing.resolve_counterpart(alice.identity_id))


if __name__ == "__main__":
    unittest.main()
