import unittest

from support import FakeClock

from tabletop.services.token_service import TokenAuthority

BOARD = "default"


class TokenAuthorityTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.tokens = TokenAuthority(30, clock=self.clock)

    def test_grant_then_check_only_for_holder(self) -> None:
        self.assertTrue(self.tokens.grant("p1", "conn-x", BOARD))
        self.assertTrue(self.tokens.check("p1", "conn-x", BOARD))
        self.assertFalse(self.tokens.check("p1", "conn-y", BOARD))
        self.assertFalse(self.tokens.check("p2", "conn-x", BOARD))

    def test_permissive_grant_displaces_current_holder(self) -> None:
        self.tokens.grant("p1", "conn-x", BOARD)
        self.assertTrue(self.tokens.grant("p1", "conn-y", BOARD))
        self.assertTrue(self.tokens.check("p1", "conn-y", BOARD))
        # at most one connection passes check for a piece
        self.assertFalse(self.tokens.check("p1", "conn-x", BOARD))

    def test_exclusive_grant_refuses_contested_piece(self) -> None:
        tokens = TokenAuthority(30, exclusive_grant=True, clock=self.clock)
        self.assertTrue(tokens.grant("p1", "conn-x", BOARD))
        self.assertFalse(tokens.grant("p1", "conn-y", BOARD))
        self.assertTrue(tokens.check("p1", "conn-x", BOARD))
        # the holder may refresh its own token
        self.clock.advance(20)
        self.assertTrue(tokens.grant("p1", "conn-x", BOARD))
        self.clock.advance(20)
        self.assertTrue(tokens.check("p1", "conn-x", BOARD))

    def test_exclusive_grant_succeeds_after_expiry(self) -> None:
        tokens = TokenAuthority(30, exclusive_grant=True, clock=self.clock)
        tokens.grant("p1", "conn-x", BOARD)
        self.clock.advance(31)
        self.assertTrue(tokens.grant("p1", "conn-y", BOARD))
        self.assertEqual(tokens.holder("p1", BOARD), "conn-y")

    def test_token_expires_after_ttl(self) -> None:
        self.tokens.grant("p1", "conn-x", BOARD)
        self.clock.advance(29)
        self.assertTrue(self.tokens.check("p1", "conn-x", BOARD))
        self.clock.advance(1)
        self.assertFalse(self.tokens.check("p1", "conn-x", BOARD))
        self.assertIsNone(self.tokens.holder("p1", BOARD))

    def test_release_by_non_holder_is_noop(self) -> None:
        self.tokens.grant("p1", "conn-x", BOARD)
        self.assertFalse(self.tokens.release("p1", "conn-y", BOARD))
        self.assertTrue(self.tokens.check("p1", "conn-x", BOARD))
        self.assertTrue(self.tokens.release("p1", "conn-x", BOARD))
        self.assertFalse(self.tokens.check("p1", "conn-x", BOARD))
        self.assertFalse(self.tokens.release("p1", "conn-x", BOARD))

    def test_release_of_expired_token_fails(self) -> None:
        self.tokens.grant("p1", "conn-x", BOARD)
        self.clock.advance(31)
        self.assertFalse(self.tokens.release("p1", "conn-x", BOARD))

    def test_release_all_returns_only_live_tokens_of_connection(self) -> None:
        self.tokens.grant("stale", "conn-x", BOARD)
        self.clock.advance(31)
        self.tokens.grant("p1", "conn-x", BOARD)
        self.tokens.grant("p2", "conn-x", "other-board")
        self.tokens.grant("p3", "conn-y", BOARD)

        released = self.tokens.release_all("conn-x")

        self.assertEqual(
            sorted((token.board_id, token.piece_id) for token in released),
            [("default", "p1"), ("other-board", "p2")],
        )
        self.assertEqual(self.tokens.locks(BOARD), {"p3": "conn-y"})
        self.assertEqual(self.tokens.release_all("conn-x"), [])

    def test_release_board_leaves_other_boards_alone(self) -> None:
        self.tokens.grant("p1", "conn-x", BOARD)
        self.tokens.grant("p1", "conn-x", "other-board")

        released = self.tokens.release_board("conn-x", BOARD)

        self.assertEqual([token.piece_id for token in released], ["p1"])
        self.assertFalse(self.tokens.check("p1", "conn-x", BOARD))
        self.assertTrue(self.tokens.check("p1", "conn-x", "other-board"))

    def test_boards_do_not_share_tokens(self) -> None:
        self.tokens.grant("p1", "conn-x", "board-a")
        self.assertFalse(self.tokens.check("p1", "conn-x", "board-b"))
        self.tokens.grant("p1", "conn-y", "board-b")
        self.assertTrue(self.tokens.check("p1", "conn-x", "board-a"))

    def test_locks_and_purge_expired(self) -> None:
        self.tokens.grant("p1", "conn-x", BOARD)
        self.clock.advance(20)
        self.tokens.grant("p2", "conn-y", BOARD)
        self.assertEqual(self.tokens.locks(BOARD), {"p1": "conn-x", "p2": "conn-y"})

        self.clock.advance(15)
        self.assertEqual(self.tokens.locks(BOARD), {"p2": "conn-y"})
        expired = self.tokens.purge_expired()
        self.assertEqual([token.piece_id for token in expired], ["p1"])
        self.assertEqual(self.tokens.purge_expired(), [])


if __name__ == "__main__":
    unittest.main()
