from .login_view import LoginView
from .dashboard_view import DashboardView
from .price_management_view import PriceManagementView

__all__ = ["LoginView", "DashboardView", "PriceManagementView"]
