import unittest

from eventdesk.errors import EventDeskError, Unauthenticated, ValidationFailed
from eventdesk.onboarding import OnboardingFlow, is_public_path, onboarding_state
from tests.fakes import FakeIdentity, make_profile, session_for


class OnboardingStateTests(unittest.TestCase):
    def test_only_true_flag_counts_as_complete(self) -> None:
        self.assertEqual(onboarding_state({"onboardingComplete": True}), "COMPLETE")
        self.assertEqual(onboarding_state({"onboardingComplete": "true"}), "NEW")
        self.assertEqual(onboarding_state(None), "NEW")

    def test_public_paths(self) -> None:
        self.assertTrue(is_public_path("/sign-in"))
        self.assertTrue(is_public_path("/sign-up/verify"))
        self.assertTrue(is_public_path("/api/webhooks/identity"))
        self.assertFalse(is_public_path("/api/collection"))
        self.assertFalse(is_public_path("/onboarding"))


class OnboardingFlowTests(unittest.TestCase):
    def setUp(self) -> None:
        self.identity = FakeIdentity(make_profile("user_1"))
        self.flow = OnboardingFlow(self.identity)

    def test_new_user_is_sent_to_onboarding(self) -> None:
        decision = self.flow.check(session_for("user_1", {}), "/dashboard")

        self.assertFalse(decision.allow)
        self.assertEqual(decision.redirect_to, "/onboarding")

    def test_anonymous_user_is_sent_to_sign_in(self) -> None:
        decision = self.flow.check(None, "/dashboard")

        self.assertFalse(decision.allow)
        self.assertEqual(decision.redirect_to, "/sign-in?redirect_url=%2Fdashboard")

    def test_onboarding_api_is_reachable_while_new(self) -> None:
        self.assertTrue(self.flow.check(session_for("user_1", {}), "/api/onboarding").allow)

    def test_complete_sets_flag_and_refreshes_session(self) -> None:
        session = session_for("user_1", {})

        result = self.flow.complete(session, "  NYC   Events ")

        self.assertEqual(result.redirect_to, "/")
        self.assertEqual(result.session_token, "refreshed-sess_user_1")
        self.assertEqual(result.metadata, {"displayName": "NYC Events", "onboardingComplete": True})
        self.assertEqual(self.identity.profiles["user_1"].metadata["displayName"], "NYC Events")
        self.assertEqual(self.identity.refreshed, ["sess_user_1"])

    def test_stale_claims_do_not_loop_after_completion(self) -> None:
        stale = session_for("user_1", {})
        self.flow.complete(stale, "NYC Events")

        home = self.flow.check(stale, "/")
        onboarding = self.flow.check(stale, "/onboarding")

        self.assertTrue(home.allow)
        self.assertEqual(home.state, "COMPLETE")
        self.assertFalse(onboarding.allow)
        self.assertEqual(onboarding.redirect_to, "/")

    def test_complete_claims_skip_provider_lookup(self) -> None:
        flow = OnboardingFlow(FakeIdentity())

        decision = flow.check(session_for("ghost", {"onboardingComplete": True}), "/")

        self.assertTrue(decision.allow)

    def test_blank_or_long_display_name_rejected(self) -> None:
        with self.assertRaises(ValidationFailed):
            self.flow.complete(session_for("user_1"), "   ")
        with self.assertRaises(ValidationFailed):
            self.flow.complete(session_for("user_1"), "x" * 81)
        self.assertEqual(self.identity.refreshed, [])

    def test_complete_requires_session(self) -> None:
        with self.assertRaises(Unauthenticated):
            self.flow.complete(None, "NYC Events")

    def test_unconfirmed_write_is_reported(self) -> None:
        self.identity.drop_metadata_writes = True

        with self.assertRaises(EventDeskError) as ctx:
            self.flow.complete(session_for("user_1"), "NYC Events")
        self.assertIn("Failed to save display name", ctx.exception.message)


if __name__ == "__main__":
    unittest.main()
