# Services Package
# Modules are imported directly (commercehub.services.<name>)
