"""
Sleeper switching on the dashboard
"""

import unittest

from fakes import DASHBOARD, FakeDriver
from sleepiq_sleepers import (
    CONFIRM_SCRIPT,
    OPTION_SCOPE,
    SHORTCUT_SCOPE,
    SLEEPER_CONTROL_SELECTORS,
    activate_sleeper,
    select_sleeper,
)


class TestSelectSleeper(unittest.TestCase):
    def setUp(self):
        self.driver = FakeDriver(DASHBOARD)
        self.driver.scripts[CONFIRM_SCRIPT] = True

    def test_visible_shortcut(self):
        self.driver.clickable = {"miki"}
        self.assertEqual(activate_sleeper(self.driver, "miki"), "shortcut")
        self.assertEqual(self.driver.called("click_text"), [("click_text", ("miki",), SHORTCUT_SCOPE)])

    def test_native_select(self):
        self.driver.options = {"rafa"}
        self.assertEqual(activate_sleeper(self.driver, "rafa"), "select")

    def test_dropdown_control(self):
        control = SLEEPER_CONTROL_SELECTORS[2]
        self.driver.selectors = {control}

        def open_menu(driver):
            driver.clickable.add("rafa")

        self.driver.actions[control] = open_menu

        self.assertEqual(activate_sleeper(self.driver, "rafa"), f"dropdown ({control})")
        self.assertEqual(self.driver.called("click_text")[-1], ("click_text", ("rafa",), OPTION_SCOPE))

    def test_selection_waits_for_the_dashboard(self):
        self.driver.clickable = {"rafa"}
        self.assertTrue(select_sleeper(self.driver, "rafa", 1500))
        self.assertIn(("wait", 1500), self.driver.calls)

    def test_no_control_is_not_an_error(self):
        """Scenario: single-sleeper account without any sleeper switcher."""
        self.assertFalse(select_sleeper(self.driver, "miki", 1500))
        self.assertEqual(self.driver.called("wait"), [])

    def test_unconfirmed_selection_still_counts(self):
        self.driver.clickable = {"miki"}
        self.driver.scripts[CONFIRM_SCRIPT] = RuntimeError("navigation in progress")
        self.assertTrue(select_sleeper(self.driver, "miki", 10))


if __name__ == "__main__":
    unittest.main()
