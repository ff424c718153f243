from decimal import Decimal

from django.test import TestCase

from .models import Order


class OrderTransitionTests(TestCase):
    def setUp(self):
        self.order = Order.objects.create(id="O1", user_id="U1", total_amount=Decimal("500.00"))

    def test_moves_from_expected_status(self):
        self.assertTrue(Order.objects.transition("O1", Order.PENDING, Order.PAID))
        self.order.refresh_from_db()
        self.assertTrue(self.order.is_paid)

    def test_refuses_when_status_moved_on(self):
        Order.objects.transition("O1", Order.PENDING, Order.CANCELLED)
        self.assertFalse(Order.objects.transition("O1", Order.PENDING, Order.PAID))
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.CANCELLED)

    def test_missing_order(self):
        self.assertFalse(Order.objects.transition("NOPE", Order.PENDING, Order.PAID))

    def test_generated_ids_are_unique(self):
        a = Order.objects.create(user_id="U1", total_amount=Decimal("1.00"))
        b = Order.objects.create(user_id="U1", total_amount=Decimal("1.00"))
        self.assertNotEqual(a.pk, b.pk)
