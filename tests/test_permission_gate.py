import threading
import unittest

from wellsync.permission_gate import PermissionGate, remediation_message


class _Provider:
    def __init__(self, answers: list[bool]) -> None:
        self.answers = list(answers)
        self.calls = 0

    def request_permission(self) -> bool:
        self.calls += 1
        return self.answers.pop(0)


class PermissionGateTests(unittest.TestCase):
    def test_grant_is_cached(self) -> None:
        provider = _Provider([True])
        gate = PermissionGate(provider)

        self.assertTrue(gate.request_access().granted)
        self.assertTrue(gate.request_access().granted)
        self.assertEqual(provider.calls, 1)
        self.assertTrue(gate.granted)

    def test_denial_is_not_cached(self) -> None:
        provider = _Provider([False, True])
        gate = PermissionGate(provider)

        denied = gate.request_access()
        self.assertFalse(denied.granted)
        self.assertIn("Settings", denied.message)
        self.assertTrue(gate.request_access().granted)
        self.assertEqual(provider.calls, 2)

    def test_platform_specific_remediation(self) -> None:
        ios = remediation_message("ios", "WellSync")
        android = remediation_message("android", "WellSync")

        self.assertIn("Privacy & Security > Calendars", ios)
        self.assertIn("Permissions > Calendar", android)
        self.assertIn("WellSync", android)
        self.assertEqual(remediation_message("symbian", "WellSync"), ios)

        gate = PermissionGate(_Provider([False]), platform="android", app_name="Thrive")
        self.assertEqual(gate.request_access().message, remediation_message("android", "Thrive"))

    def test_provider_exception_counts_as_denial(self) -> None:
        class _Broken:
            def request_permission(self) -> bool:
                raise ConnectionError("unreachable")

        result = PermissionGate(_Broken()).request_access(timeout=1)

        self.assertFalse(result.granted)
        self.assertTrue(result.message)

    def test_prompt_timeout_counts_as_denial(self) -> None:
        release = threading.Event()

        class _Slow:
            def request_permission(self) -> bool:
                release.wait(timeout=5)
                return True

        gate = PermissionGate(_Slow())
        try:
            result = gate.request_access(timeout=0.1)
        finally:
            release.set()

        self.assertFalse(result.granted)
        self.assertFalse(gate.granted)


if __name__ == "__main__":
    unittest.main()
